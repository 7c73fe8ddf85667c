import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from gateway.schemas import QuotaView
from .clock import next_reset_at, today_key, utc_now
from .models import QuotaRecord
from .store import QuotaStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    quota: QuotaView


class QuotaEngine:
    """Daily per-caller quota accounting.

    Reset is lazy: a stored count only applies to its ``last_usage_date``. When
    the current UTC day differs, the effective usage is zero and nothing has to
    run at midnight to clear it.
    """

    def __init__(
        self,
        store: QuotaStore,
        default_quota: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if default_quota < 1:
            raise ValueError("default_quota must be positive")
        self._store = store
        self._default_quota = default_quota
        self._clock = clock

    @property
    def default_quota(self) -> int:
        return self._default_quota

    def _effective(self, record: Optional[QuotaRecord], now: datetime) -> Tuple[int, int, datetime, bool]:
        """Return (used, total, reset_at, is_today) as seen at ``now``."""
        is_today = record is not None and record.last_usage_date == today_key(now)
        used = int(record.used_today or 0) if is_today else 0
        total = int(record.total_quota or 0) if record is not None else 0
        if total <= 0:
            total = self._default_quota
        if is_today and record.reset_at is not None:
            reset_at = record.reset_at
        else:
            reset_at = next_reset_at(now)
        return used, total, reset_at, is_today

    async def read_quota(self, caller_id: str) -> QuotaView:
        record = await self._store.read(caller_id)
        used, total, reset_at, _ = self._effective(record, self._clock())
        return QuotaView.build(used=used, total=total, reset_at=reset_at)

    async def consume_quota(self, caller_id: str, email: Optional[str] = None) -> ConsumeResult:
        """Charge one unit of today's quota if any is left.

        Over-quota callers get ``allowed=False`` and nothing is written, so the
        stored reset instant is left as is.
        """

        def _consume(record: Optional[QuotaRecord]) -> Tuple[ConsumeResult, Optional[QuotaRecord]]:
            now = self._clock()
            used_before, total, reset_at, _ = self._effective(record, now)

            if used_before >= total:
                view = QuotaView.build(used=used_before, total=total, reset_at=reset_at)
                return ConsumeResult(allowed=False, quota=view), None

            used_after = used_before + 1
            new_reset_at = next_reset_at(now)
            replacement = QuotaRecord(
                used_today=used_after,
                total_quota=total,
                last_usage_date=today_key(now),
                reset_at=new_reset_at,
                email=email,
            )
            view = QuotaView.build(used=used_after, total=total, reset_at=new_reset_at)
            return ConsumeResult(allowed=True, quota=view), replacement

        result = await self._store.atomic_update(caller_id, _consume)
        if not result.allowed:
            logger.info("Daily quota exhausted for %s (%d/%d)", caller_id, result.quota.used, result.quota.total)
        return result
