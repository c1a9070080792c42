from enum import Enum


class ProgressStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    COMPLETED = "completed"


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    COMPLETE = "complete"


class TurnKind(str, Enum):
    INITIAL = "initial"
    CONTINUE = "continue"


class Speaker(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"


class SourceKind(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    DOCUMENT = "document"
