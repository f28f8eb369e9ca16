from __future__ import annotations

from pydantic import BaseModel, ConfigDict, model_validator


class LostRange(BaseModel):
    """Inclusive interval of process instance keys allocated during the data-loss window."""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    @model_validator(mode="after")
    def _ordered(self) -> "LostRange":
        if self.start > self.end:
            raise ValueError(f"lost range start {self.start} is greater than end {self.end}")
        return self

    def contains(self, key: int) -> bool:
        return self.start <= key <= self.end


class FlowNodeRef(BaseModel):
    # Flow node instance key as it appears in the snapshot dump (string form).
    key: str
    process_instance_key: int


class VariableRemoval(BaseModel):
    key: int | str
    process_instance_key: int
    flow_node_instance_key: str
    value_base64: str
    value: str
