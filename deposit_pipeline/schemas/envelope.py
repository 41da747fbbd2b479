import json
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from deposit_pipeline.domain.exceptions import EnvelopeDecodeError


class WorkEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tx: Any
    execution_id: UUID = Field(alias="executionId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ControlEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    control: Literal[True] = True
    execution_id: UUID = Field(alias="executionId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


Envelope = WorkEnvelope | ControlEnvelope


def parse_envelope(body: bytes | str) -> Envelope:
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as e:
        raise EnvelopeDecodeError(f"Envelope is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise EnvelopeDecodeError(f"Envelope must be a JSON object, got {type(data).__name__}")

    try:
        if data.get("control") is True:
            return ControlEnvelope.model_validate(data)
        if "tx" not in data:
            raise EnvelopeDecodeError("Envelope carries neither 'tx' nor 'control'")
        return WorkEnvelope.model_validate(data)
    except ValidationError as e:
        raise EnvelopeDecodeError(f"Envelope failed validation: {e}") from e
