"""Per-session bookkeeping for batch scanning."""

import uuid
from dataclasses import dataclass, field


@dataclass
class ScanSession:
    """File names already submitted during one scanning session.

    A name is claimed once; later submissions with the same name are
    skipped until it is released or the session is cleared.
    """

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted: set[str] = field(default_factory=set)

    def claim(self, file_name: str) -> bool:
        if file_name in self.submitted:
            return False
        self.submitted.add(file_name)
        return True

    def release(self, file_name: str) -> None:
        self.submitted.discard(file_name)

    def clear(self) -> None:
        self.submitted.clear()
