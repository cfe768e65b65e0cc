from datetime import datetime, timedelta, timezone
from typing import Iterable, List

from marketchat.backend import InMemoryBackend, SequentialIds
from marketchat.channels import LocalHub

SEED_START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock for backends; every reading is one millisecond after the last."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 6, 1, tzinfo=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    def now(self) -> datetime:
        self.current += timedelta(milliseconds=1)
        return self.current


def make_backend(*, hub: LocalHub | None = None, clock: FakeClock | None = None) -> InMemoryBackend:
    backend = InMemoryBackend(hub=hub, now_func=(clock or FakeClock()).now, id_func=SequentialIds())
    backend.add_user("u1", "alice")
    backend.add_user("u2", "bob")
    backend.add_user("u3", "carol")
    backend.add_item("i1", "Road bike", price=250.0, images=["bike.jpg"])
    backend.add_item("i2", "Desk lamp", price=15.0)
    return backend


def seed_messages(
    backend: InMemoryBackend,
    conversation_id: str,
    count: int,
    *,
    senders: Iterable[str] = ("u1", "u2"),
    start: datetime = SEED_START,
) -> List[str]:
    """Seed ``count`` messages one second apart; returns their ids oldest first."""

    senders = list(senders)
    ids = []
    for index in range(count):
        message_id = f"seed-{index:03d}"
        backend.add_message(
            {
                "id": message_id,
                "conversation_id": conversation_id,
                "sender_id": senders[index % len(senders)],
                "message_type": "text",
                "content": f"message {index}",
                "created_at": start + timedelta(seconds=index),
            }
        )
        ids.append(message_id)
    return ids
