from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from deposit_pipeline.domain.services.persistence_gateway import BatchPersistenceGateway

ZERO = Decimal("0")


@dataclass
class DepositTally:
    count: int = 0
    total: Decimal = ZERO

    def add(self, amount: Decimal) -> None:
        self.count += 1
        self.total += amount


@dataclass
class DepositReport:
    known: dict[str, DepositTally] = field(default_factory=dict)
    unknown: DepositTally = field(default_factory=DepositTally)
    smallest: Decimal = ZERO
    largest: Decimal = ZERO

    def lines(self) -> list[str]:
        lines = [
            f"Deposited for {name}: count={tally.count} sum={tally.total:.8f}"
            for name, tally in self.known.items()
        ]
        lines.append(
            f"Deposited without reference: count={self.unknown.count} "
            f"sum={self.unknown.total:.8f}"
        )
        lines.append(f"Smallest valid deposit: {self.smallest:.8f}")
        lines.append(f"Largest valid deposit: {self.largest:.8f}")
        return lines


class DepositReportService:
    def __init__(self, gateway: BatchPersistenceGateway, known_addresses: dict[str, str]):
        self.gateway = gateway
        self.known_addresses = known_addresses

    def aggregate(self, execution_id: UUID, min_confirmations: int) -> DepositReport:
        deposits = self.gateway.list_deposits(execution_id, min_confirmations)

        # customers keep the configured order and show up even with no deposits
        report = DepositReport(
            known={name: DepositTally() for name in self.known_addresses.values()}
        )
        amounts = []

        for deposit in deposits:
            amounts.append(deposit.amount)
            name = self.known_addresses.get(deposit.address)
            if name is None:
                report.unknown.add(deposit.amount)
            else:
                report.known[name].add(deposit.amount)

        if amounts:
            report.smallest = min(amounts)
            report.largest = max(amounts)

        return report
