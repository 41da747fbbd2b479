import json
from pathlib import Path

from pydantic import ValidationError

from deposit_pipeline.core.logging import get_logger
from deposit_pipeline.domain.exceptions import FileProcessingError
from deposit_pipeline.schemas.transaction import TransactionBatch

logger = get_logger(__name__)


def read_transaction_batch(name: str, data_dir: Path | str) -> TransactionBatch:
    path = Path(data_dir) / name

    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise FileProcessingError(f"Transaction file not found: {name}", file_name=name) from e
    except OSError as e:
        raise FileProcessingError(f"Could not read transaction file {name}: {e}", name) from e

    try:
        data = json.loads(content)
    except ValueError as e:
        raise FileProcessingError(f"Malformed JSON in transaction file {name}: {e}", name) from e

    if not isinstance(data, dict):
        raise FileProcessingError(f"Invalid format in transaction file {name}", file_name=name)

    try:
        batch = TransactionBatch.model_validate(data)
    except ValidationError as e:
        raise FileProcessingError(
            f"Invalid format in transaction file {name}: 'transactions' must be a list",
            file_name=name,
        ) from e

    logger.debug("transaction_file_read", file=name, records=len(batch.transactions))
    return batch
