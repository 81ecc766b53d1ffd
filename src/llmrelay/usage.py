"""Per-day, per-feature usage metering for free-tier callers.

The relay only defines the call sites: :func:`check_quota` runs before a
completion and :meth:`UsageGate.after_success` after a successful one.  Caller
identity comes from the authentication layer in front of the relay through
trusted headers; the relay never authenticates anyone itself.

Two gates are provided: :class:`InMemoryUsageGate` for single-process
deployments and tests, and :class:`DatabaseUsageGate` backed by SQLAlchemy.
"""

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

import structlog
from sqlalchemy import Column, Integer, MetaData, String, Table, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine

from llmrelay.metrics import QUOTA_REJECTED
from llmrelay.providers.errors import (
    CallerRequiredError,
    FeatureRequiredError,
    QuotaExceededError,
)
from llmrelay.ratelimit import Clock, SystemClock

FEATURE_HEADER = "X-Relay-Feature"

_SECONDS_PER_DAY = 86_400

_log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """A caller already authenticated upstream of the relay.

    Attributes:
        caller_id: Stable user identifier.
        plan: Subscription plan; ``"pro"`` callers are not metered.
        byok: The caller supplies their own provider credentials and is not
            metered.
    """

    caller_id: str
    plan: str = "free"
    byok: bool = False

    @property
    def bypasses_quota(self) -> bool:
        return self.byok or self.plan == "pro"


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    used: int
    limit: int


class UsageGate(Protocol):
    limits: Mapping[str, int]

    async def before_request(self, caller_id: str, feature: str) -> UsageDecision: ...

    async def after_success(self, caller_id: str, feature: str) -> None: ...


def day_number(now: float) -> int:
    """Whole UTC days since the epoch."""
    return int(now // _SECONDS_PER_DAY)


def parse_usage_feature(value: str | None, limits: Mapping[str, int]) -> str | None:
    if not value:
        return None
    feature = value.strip()
    return feature if feature in limits else None


async def check_quota(
    gate: UsageGate | None,
    caller: CallerIdentity | None,
    raw_feature: str | None,
    upgrade_url: str,
) -> str | None:
    """Consult *gate* before serving a completion.

    Returns:
        The feature to report through :meth:`UsageGate.after_success`, or
        ``None`` when the request is not metered.

    Raises:
        CallerRequiredError: Metering is on but no caller identity arrived.
        FeatureRequiredError: The feature header is missing or unknown.
        QuotaExceededError: Today's allowance for the feature is used up.
    """
    if gate is None:
        return None
    if caller is None:
        raise CallerRequiredError("Caller identity required")
    if caller.bypasses_quota:
        return None

    feature = parse_usage_feature(raw_feature, gate.limits)
    if feature is None:
        raise FeatureRequiredError(
            f"{FEATURE_HEADER} header must be one of {sorted(gate.limits)}"
        )

    decision = await gate.before_request(caller.caller_id, feature)
    if not decision.allowed:
        _log.info(
            "quota_exceeded",
            caller_id=caller.caller_id,
            feature=feature,
            used=decision.used,
            limit=decision.limit,
        )
        QUOTA_REJECTED.labels(feature=feature).inc()
        raise QuotaExceededError(feature, decision.limit, upgrade_url)
    return feature


class InMemoryUsageGate:
    """Process-local usage counters; lost on restart."""

    def __init__(self, limits: Mapping[str, int], clock: Clock | None = None) -> None:
        self.limits = dict(limits)
        self._clock = clock or SystemClock()
        self._counts: dict[tuple[str, int, str], int] = {}
        self._lock = threading.Lock()

    async def before_request(self, caller_id: str, feature: str) -> UsageDecision:
        key = (caller_id, day_number(self._clock.now()), feature)
        with self._lock:
            used = self._counts.get(key, 0)
        limit = self.limits[feature]
        return UsageDecision(allowed=used < limit, used=used, limit=limit)

    async def after_success(self, caller_id: str, feature: str) -> None:
        key = (caller_id, day_number(self._clock.now()), feature)
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1


# ---------------------------------------------------------------------------
# SQL-backed gate
# ---------------------------------------------------------------------------

metadata = MetaData()

usage_table = Table(
    "usage",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("day_number", Integer, primary_key=True),
    Column("feature", String(64), primary_key=True),
    Column("count", Integer, nullable=False, default=0),
)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class DatabaseUsageGate:
    """Usage counters in a ``usage(user_id, day_number, feature, count)`` table.

    Args:
        engine: Async SQLAlchemy engine (``postgresql+asyncpg`` in production).
        limits: Free daily allowance per feature.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        limits: Mapping[str, int],
        clock: Clock | None = None,
    ) -> None:
        self.limits = dict(limits)
        self._engine = engine
        self._clock = clock or SystemClock()

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    async def before_request(self, caller_id: str, feature: str) -> UsageDecision:
        day = day_number(self._clock.now())
        stmt = select(usage_table.c["count"]).where(
            usage_table.c.user_id == caller_id,
            usage_table.c.day_number == day,
            usage_table.c.feature == feature,
        )
        async with self._engine.connect() as conn:
            used = (await conn.execute(stmt)).scalar_one_or_none() or 0
        limit = self.limits[feature]
        return UsageDecision(allowed=used < limit, used=used, limit=limit)

    async def after_success(self, caller_id: str, feature: str) -> None:
        day = day_number(self._clock.now())
        key = {"user_id": caller_id, "day_number": day, "feature": feature}
        insert = _UPSERT_DIALECTS.get(self._engine.dialect.name)

        async with self._engine.begin() as conn:
            if insert is not None:
                stmt = (
                    insert(usage_table)
                    .values(**key, count=1)
                    .on_conflict_do_update(
                        index_elements=list(key),
                        set_={"count": usage_table.c["count"] + 1},
                    )
                )
                await conn.execute(stmt)
                return

            result = await conn.execute(
                update(usage_table)
                .where(
                    usage_table.c.user_id == caller_id,
                    usage_table.c.day_number == day,
                    usage_table.c.feature == feature,
                )
                .values(count=usage_table.c["count"] + 1)
            )
            if result.rowcount == 0:
                await conn.execute(usage_table.insert().values(**key, count=1))
