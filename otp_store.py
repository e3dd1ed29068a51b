import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class OTPEntry:
    code: str
    issued_at: datetime
    ttl_seconds: int
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.issued_at + timedelta(seconds=self.ttl_seconds)


class OTPStore:
    """
    One-time codes keyed by phone number. Each entry expires on its own after
    `ttl_seconds`; a successful verification consumes the code.
    """

    def __init__(self, ttl_seconds: int = 300, digits: int = 6, max_attempts: int = 5):
        self._ttl = ttl_seconds
        self._digits = digits
        self._max_attempts = max_attempts
        self._entries: Dict[str, OTPEntry] = {}
        self._lock = Lock()

    def issue(self, phone: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        code = "".join(secrets.choice("0123456789") for _ in range(self._digits))
        with self._lock:
            self._entries[phone] = OTPEntry(code=code, issued_at=now, ttl_seconds=self._ttl)
        logger.info("OTP issued for %s, valid %ss", phone[-4:].rjust(len(phone), "*"), self._ttl)
        return code

    def verify(self, phone: str, code: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            entry = self._entries.get(phone)
            if entry is None:
                return False
            if entry.is_expired(now):
                del self._entries[phone]
                return False
            entry.attempts += 1
            if entry.code != code:
                if entry.attempts >= self._max_attempts:
                    del self._entries[phone]
                return False
            del self._entries[phone]
            return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            expired = [phone for phone, entry in self._entries.items() if entry.is_expired(now)]
            for phone in expired:
                del self._entries[phone]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
