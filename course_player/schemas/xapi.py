import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field

from course_player.schemas.course import WireModel

ADL_VERB_PREFIX = "http://adlnet.gov/expapi/verbs/"
ADL_ACTIVITY_PREFIX = "http://adlnet.gov/expapi/activities/"


class Verb(str, Enum):
    LAUNCHED = "launched"
    PROGRESSED = "progressed"
    COMPLETED = "completed"
    PASSED = "passed"
    FAILED = "failed"

    @property
    def iri(self) -> str:
        return f"{ADL_VERB_PREFIX}{self.value}"


class Actor(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    email: str | None = None


class XapiResult(WireModel):
    model_config = ConfigDict(frozen=True)

    duration: str | None = None
    completion: bool | None = None
    success: bool | None = None
    score: float | None = None


class XapiStatement(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    actor_id: str
    actor_name: str = ""
    actor_email: str | None = None
    verb: Verb
    object_id: str
    object_name: str = ""
    object_type: str
    timestamp: datetime
    result: XapiResult | None = None

    def to_wire(self) -> dict[str, Any]:
        """ADL statement shape expected by the xAPI sink."""
        actor: dict[str, Any] = {"name": self.actor_name or self.actor_id}
        if self.actor_email:
            actor["mbox"] = f"mailto:{self.actor_email}"
        else:
            actor["account"] = {"name": self.actor_id}

        statement: dict[str, Any] = {
            "id": self.id,
            "actor": actor,
            "verb": {"id": self.verb.iri, "display": {"en-US": self.verb.value}},
            "object": {
                "id": self.object_id,
                "definition": {
                    "name": {"en-US": self.object_name},
                    "type": f"{ADL_ACTIVITY_PREFIX}{self.object_type}",
                },
            },
            "timestamp": self.timestamp.isoformat(),
        }
        if self.result is not None:
            result = {}
            if self.result.duration is not None:
                result["duration"] = self.result.duration
            if self.result.completion is not None:
                result["completion"] = self.result.completion
            if self.result.success is not None:
                result["success"] = self.result.success
            if self.result.score is not None:
                result["score"] = {"scaled": round(self.result.score / 100, 4)}
            statement["result"] = result
        return statement
