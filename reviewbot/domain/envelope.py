"""
Task Envelope - the durable unit of work that travels through the broker.

The JSON form is the wire format shared by the gateway and the workers, so
it is versioned and decoding ignores fields it does not know: an older
worker can still consume envelopes from a newer gateway.
"""
import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

ENVELOPE_VERSION = 1


class TaskType(str, enum.Enum):
    COMMENT = "comment"
    TRIGGER_CI = "trigger_ci"
    SIGN_COMMIT = "sign_commit"
    MERGE = "merge"
    LABEL = "label"


class TaskEnvelope(BaseModel):
    """Immutable envelope; retries produce copies with a higher attempt"""

    model_config = ConfigDict(frozen=True, extra="ignore")

    version: int = ENVELOPE_VERSION
    delivery_id: str = Field(min_length=1, max_length=200)
    task_type: TaskType
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt: int = Field(default=0, ge=0)
    event: str = ""
    installation_id: int | None = None

    @field_validator("delivery_id")
    @classmethod
    def strip_delivery_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("delivery_id must not be blank")
        return v

    @property
    def envelope_id(self) -> str:
        """Delivery-derived id, stable across retries"""
        return f"{self.delivery_id}:{self.task_type.value}"

    @property
    def message_id(self) -> str:
        """Broker message id; unique per attempt so a requeued copy is a new message"""
        return f"{self.envelope_id}:{self.attempt}"

    @property
    def key(self) -> tuple[str, str]:
        """Idempotency key"""
        return self.delivery_id, self.task_type.value

    def next_attempt(self) -> "TaskEnvelope":
        return self.model_copy(update={"attempt": self.attempt + 1})

    def with_attempt(self, attempt: int) -> "TaskEnvelope":
        return self.model_copy(update={"attempt": attempt})

    def follow_up(
        self,
        task_type: TaskType,
        payload: dict[str, Any],
        *,
        suffix: str | None = None,
    ) -> "TaskEnvelope":
        """New envelope derived from this one, with its own idempotency key"""
        return TaskEnvelope(
            delivery_id=f"{self.delivery_id}/{suffix or self.task_type.value}",
            task_type=task_type,
            payload=payload,
            event=self.event,
            installation_id=self.installation_id,
        )

    def to_message(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_message(cls, data: dict[str, Any]) -> "TaskEnvelope":
        return cls.model_validate(data)
