class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    LESSON_NOT_FOUND = "LESSON_NOT_FOUND"
    COURSE_NOT_FOUND = "COURSE_NOT_FOUND"
    LESSON_LOCKED = "LESSON_LOCKED"
    QUIZ_LOCKED = "QUIZ_LOCKED"
    SEEK_NOT_ALLOWED = "SEEK_NOT_ALLOWED"
    INVALID_SIGNAL = "INVALID_SIGNAL"
    SYNC_UNAVAILABLE = "SYNC_UNAVAILABLE"
    SYNC_REJECTED = "SYNC_REJECTED"
    SCORM_MISUSE = "SCORM_MISUSE"
    RTE_NOT_INSTALLED = "RTE_NOT_INSTALLED"
    RTE_IN_USE = "RTE_IN_USE"
    GRADING_UNAVAILABLE = "GRADING_UNAVAILABLE"
