"""
SCORM 1.2 / SCORM 2004 Run-Time Environment shim.

Packaged content talks to the LMS through a global API object (``API`` for 1.2,
``API_1484_11`` for 2004) using a string based contract: every call returns a
string and failures are reported with ``"false"`` rather than exceptions. The shim
keeps that contract and funnels status changes into the progress tracker.

Version differences are data: each ``ScormDialect`` names the API global, its
methods and the CMI elements with special meaning. Adding a version means adding a
dialect, not touching the control flow.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from course_player.core.error_codes import ErrorCode
from course_player.core.errors import ApiError, ScormProtocolMisuse
from course_player.schemas.course import Lesson, ScormVersion
from course_player.schemas.signals import ScormStatus
from course_player.schemas.xapi import Actor

logger = logging.getLogger(__name__)

TRUE = "true"
FALSE = "false"
NO_ERROR = "0"

SUSPEND_DATA_ELEMENT = "cmi.suspend_data"
WELL_FORMED_PREFIXES = ("cmi.", "adl.")
COMPLETION_VALUES = frozenset({"completed", "passed"})


@dataclass(frozen=True)
class ScormDialect:
    version: ScormVersion
    api_name: str
    # API method name -> shim operation
    methods: dict[str, str]
    status_element: str
    score_element: str
    success_element: str | None
    location_element: str
    learner_id_element: str
    learner_name_element: str
    entry_element: str
    exit_element: str
    session_time_element: str
    suspend_data_limit: int


SCORM_12 = ScormDialect(
    version=ScormVersion.SCORM_12,
    api_name="API",
    methods={
        "LMSInitialize": "initialize",
        "LMSFinish": "terminate",
        "LMSGetValue": "get_value",
        "LMSSetValue": "set_value",
        "LMSCommit": "commit",
        "LMSGetLastError": "get_last_error",
        "LMSGetErrorString": "get_error_string",
        "LMSGetDiagnostic": "get_diagnostic",
    },
    status_element="cmi.core.lesson_status",
    score_element="cmi.core.score.raw",
    success_element=None,
    location_element="cmi.core.lesson_location",
    learner_id_element="cmi.core.student_id",
    learner_name_element="cmi.core.student_name",
    entry_element="cmi.core.entry",
    exit_element="cmi.core.exit",
    session_time_element="cmi.core.session_time",
    suspend_data_limit=4096,
)

SCORM_2004 = ScormDialect(
    version=ScormVersion.SCORM_2004,
    api_name="API_1484_11",
    methods={
        "Initialize": "initialize",
        "Terminate": "terminate",
        "GetValue": "get_value",
        "SetValue": "set_value",
        "Commit": "commit",
        "GetLastError": "get_last_error",
        "GetErrorString": "get_error_string",
        "GetDiagnostic": "get_diagnostic",
    },
    status_element="cmi.completion_status",
    score_element="cmi.score.raw",
    success_element="cmi.success_status",
    location_element="cmi.location",
    learner_id_element="cmi.learner_id",
    learner_name_element="cmi.learner_name",
    entry_element="cmi.entry",
    exit_element="cmi.exit",
    session_time_element="cmi.session_time",
    suspend_data_limit=64000,
)

DIALECTS: dict[ScormVersion, ScormDialect] = {d.version: d for d in (SCORM_12, SCORM_2004)}
DIALECTS_BY_API: dict[str, ScormDialect] = {d.api_name: d for d in DIALECTS.values()}


def dialect_for(version: ScormVersion | str | None) -> ScormDialect:
    if version is None:
        return SCORM_12
    return DIALECTS[ScormVersion(version)]


class RuntimeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    TERMINATED = "terminated"


StatusCallback = Callable[[ScormStatus], None]


class ScormRuntimeShim:
    """One lesson session of SCORM content."""

    def __init__(
        self,
        lesson: Lesson,
        actor: Actor,
        on_status: StatusCallback,
        on_commit: StatusCallback,
        suspend_data: str | None = None,
    ) -> None:
        self.lesson = lesson
        self.actor = actor
        self.dialect = dialect_for(lesson.scorm_version)
        self.state = RuntimeState.UNINITIALIZED
        self.scorm_data: dict[str, str] = {}
        self.commit_count = 0
        self._on_status = on_status
        self._on_commit = on_commit
        if suspend_data:
            self.scorm_data[SUSPEND_DATA_ELEMENT] = suspend_data

    # ── RTE operations ───────────────────────────────────────────────────────

    def initialize(self, _param: str = "", dialect: ScormDialect | None = None) -> str:
        if self.state is not RuntimeState.UNINITIALIZED:
            return self._misuse("Initialize")
        if dialect is not None:
            self.dialect = dialect
        self.state = RuntimeState.INITIALIZED
        d = self.dialect
        self.scorm_data.setdefault(d.learner_id_element, self.actor.id)
        self.scorm_data.setdefault(d.learner_name_element, self.actor.name)
        self.scorm_data.setdefault(d.entry_element, "resume" if self.scorm_data.get(SUSPEND_DATA_ELEMENT) else "ab-initio")
        logger.debug("SCORM %s initialized for lesson %s", d.version.value, self.lesson.id)
        return TRUE

    def get_value(self, element: str = "") -> str:
        if self.state is not RuntimeState.INITIALIZED:
            self._misuse("GetValue")
            return ""
        if not _well_formed(element):
            return ""
        return self.scorm_data.get(element, "")

    def set_value(self, element: str = "", value: str = "") -> str:
        if self.state is not RuntimeState.INITIALIZED:
            return self._misuse("SetValue")
        if not _well_formed(element):
            logger.warning("Ignoring SetValue on malformed element %r (lesson %s)", element, self.lesson.id)
            return FALSE

        value = "" if value is None else str(value)
        d = self.dialect
        if element == SUSPEND_DATA_ELEMENT and len(value) > d.suspend_data_limit:
            logger.warning(
                "Suspend data for lesson %s exceeds %d characters; refused", self.lesson.id, d.suspend_data_limit
            )
            return FALSE

        self.scorm_data[element] = value

        if element == d.status_element and value in COMPLETION_VALUES:
            self._on_status(self._status_signal())
        elif element == d.score_element:
            score = _parse_score(value)
            if score is not None:
                self._on_status(ScormStatus(score=score))
        elif d.success_element is not None and element == d.success_element and value in ("passed", "failed"):
            self._on_status(ScormStatus(success=value))
        return TRUE

    def commit(self, _param: str = "") -> str:
        if self.state is not RuntimeState.INITIALIZED:
            return self._misuse("Commit")
        self._commit()
        return TRUE

    def terminate(self, _param: str = "") -> str:
        if self.state is not RuntimeState.INITIALIZED:
            return self._misuse("Terminate")
        self._commit()
        self.state = RuntimeState.TERMINATED
        d = self.dialect
        logger.debug(
            "SCORM session terminated for lesson %s (exit=%r, session_time=%r)",
            self.lesson.id,
            self.scorm_data.get(d.exit_element, ""),
            self.scorm_data.get(d.session_time_element, ""),
        )
        return TRUE

    def get_last_error(self, *_args: str) -> str:
        return NO_ERROR

    def get_error_string(self, _code: str = "") -> str:
        return ""

    def get_diagnostic(self, _code: str = "") -> str:
        return ""

    # ── helpers ──────────────────────────────────────────────────────────────

    def _commit(self) -> None:
        self.commit_count += 1
        self._on_commit(self._status_signal())

    def _status_signal(self) -> ScormStatus:
        d = self.dialect
        status = self.scorm_data.get(d.status_element) or None
        success = self.scorm_data.get(d.success_element) if d.success_element else None
        return ScormStatus(
            status=status,
            score=_parse_score(self.scorm_data.get(d.score_element, "")),
            success=success or None,
            suspend_data=self.scorm_data.get(SUSPEND_DATA_ELEMENT),
        )

    def _misuse(self, call: str) -> str:
        err = ScormProtocolMisuse(call, self.state.value)
        logger.warning("SCORM misuse on lesson %s: %s", self.lesson.id, err.message)
        return FALSE


def _well_formed(element: str) -> bool:
    return bool(element) and element.startswith(WELL_FORMED_PREFIXES)


def _parse_score(value: str) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class RteApi:
    """The object content finds under ``window.API`` / ``window.API_1484_11``."""

    def __init__(self, shim: ScormRuntimeShim, dialect: ScormDialect) -> None:
        self._shim = shim
        self.dialect = dialect

    def call(self, method: str, *args: str) -> str:
        operation = self.dialect.methods.get(method)
        if operation is None:
            logger.warning("Unknown %s method %r", self.dialect.api_name, method)
            return FALSE
        try:
            if operation == "initialize":
                return self._shim.initialize(*args[:1], dialect=self.dialect)
            return getattr(self._shim, operation)(*args)
        except TypeError:
            logger.warning("Bad arguments for %s.%s: %r", self.dialect.api_name, method, args)
            return FALSE

    def __getattr__(self, name: str):
        if name.startswith("_") or name not in self.dialect.methods:
            raise AttributeError(name)
        return lambda *args: self.call(name, *args)


@dataclass
class RteSlot:
    """Home of the RTE globals for one playback session. One owner at a time."""

    _owner: ScormRuntimeShim | None = None
    _apis: dict[str, RteApi] = field(default_factory=dict)

    @property
    def owner(self) -> ScormRuntimeShim | None:
        return self._owner

    def install(self, shim: ScormRuntimeShim) -> None:
        if self._owner is not None and self._owner is not shim:
            raise ApiError(
                status_code=409,
                code=ErrorCode.RTE_IN_USE,
                message=f"SCORM runtime already installed for lesson {self._owner.lesson.id}",
            )
        self._owner = shim
        self._apis = {name: RteApi(shim, dialect) for name, dialect in DIALECTS_BY_API.items()}

    def uninstall(self, shim: ScormRuntimeShim) -> None:
        if self._owner is not shim:
            return
        self._owner = None
        self._apis = {}

    def lookup(self, api_name: str) -> RteApi | None:
        return self._apis.get(api_name)
