from .db import (
    Base,
    Recipient,
    Question,
    QueueEntry,
    OpenInteraction,
    STATUS_PENDING,
    STATUS_SENT,
    STATUS_FAILED,
    make_engine,
    make_session_maker,
    get_engine,
    get_session_maker,
    create_all,
    dispose_engine,
)  # noqa: F401
