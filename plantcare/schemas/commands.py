from typing import Any, Literal

from pydantic import BaseModel, Field


class CommandPayload(BaseModel):
    """Body published on ``commands/<id>/<command>``."""

    command: str
    duration: int | None = None
    config: dict[str, Any] | None = None
    timestamp: str

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class ServerStatusPayload(BaseModel):
    """Retained presence message on ``server/status`` (also the last-will)."""

    status: Literal["online", "offline"]
    timestamp: str | None = Field(default=None)

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)
