"""Test data factories for jobhost.

Factory helpers and a deterministic clock shared by the test modules.
"""

from datetime import UTC, datetime, timedelta

from jobhost.services.job_record import JobRecord

EPOCH = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; advance() is the only way time moves."""

    def __init__(self, now: datetime = EPOCH) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


def create_record(
    handler_name: str = "send-email",
    payload: str = "{}",
    created_at: datetime = EPOCH,
    **kwargs,
) -> JobRecord:
    """Create a Pending job record.

    Args:
        handler_name: Registry key of the handler.
        payload: Serialized JSON payload.
        created_at: Creation time; also used as updated_at.
        **kwargs: Any other JobRecord field (priority, scheduled_at, ...).

    Returns:
        JobRecord ready to be saved in a store.
    """
    return JobRecord(
        handler_name=handler_name,
        payload=payload,
        created_at=created_at,
        updated_at=created_at,
        **kwargs,
    )
