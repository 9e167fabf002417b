"""Workload generation: caller identity pools and per-iteration request building.

Requests are built fresh for every iteration and never reused, so an order body
is re-sampled each time. Bodies are serialized once with orjson here; the
engine sends bytes as-is.
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Sequence

import orjson

from .exceptions import StampedeConfigError
from .logging_config import get_logger
from .models import Request, ScenarioConfig, ScenarioKind, SelectionStrategy

logger = get_logger("workload")

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}
COUPON_TAG = "coupon_fcfs"
ORDER_TAG_PREFIX = "order_"


class TargetPool:
    """Set of caller identifiers a workload draws from.

    Either an inclusive numeric range (start..end) or an explicit list.
    An empty pool is rejected at construction.
    """

    __slots__ = ("_start", "_size", "_ids")

    def __init__(
        self,
        start: int | None = None,
        end: int | None = None,
        ids: Sequence[str] | None = None,
    ) -> None:
        if ids:
            self._ids: tuple[str, ...] | None = tuple(str(i) for i in ids)
            self._start = 0
            self._size = len(self._ids)
            return
        if start is None or end is None:
            raise StampedeConfigError("Caller pool needs either an id list or a start/end range")
        if end < start:
            raise StampedeConfigError(
                "Caller pool is empty: user_id_end is below user_id_start",
                context={"user_id_start": start, "user_id_end": end},
            )
        self._ids = None
        self._start = start
        self._size = end - start + 1

    @classmethod
    def from_file(cls, path: str | Path) -> "TargetPool":
        """One identifier per line. Blank lines and '#' comments are ignored."""
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise StampedeConfigError(
                f"Cannot read user id file: {p}",
                context={"path": str(p)},
                original_error=e,
            ) from e
        ids = [
            line.strip()
            for line in text.splitlines()
            if line.strip() and not line.lstrip().startswith("#")
        ]
        if not ids:
            raise StampedeConfigError("User id file is empty", context={"path": str(p)})
        logger.debug("Loaded %d caller ids from %s", len(ids), p)
        return cls(ids=ids)

    @property
    def size(self) -> int:
        return self._size

    @property
    def is_range(self) -> bool:
        return self._ids is None

    def at(self, offset: int) -> str:
        """Identifier at offset modulo pool size."""
        i = offset % self._size
        if self._ids is not None:
            return self._ids[i]
        return str(self._start + i)

    def pick(self, rng: random.Random | None = None) -> str:
        return self.at((rng or random).randrange(self._size))

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        if self._ids is not None:
            return f"TargetPool(ids={self._size})"
        return f"TargetPool(range={self._start}..{self._start + self._size - 1})"


def pool_from_config(config: ScenarioConfig) -> TargetPool:
    if config.user_ids:
        return TargetPool(ids=config.user_ids)
    return TargetPool(start=config.user_id_start, end=config.user_id_end)


class WorkloadGenerator:
    """Builds the next Request for a virtual user.

    Selection strategies:
    - random: uniform pick from the pool on every call
    - sequential_unique: start + (vu_index mod size), so distinct VUs get distinct ids
      while the pool is large enough
    - fixed_pool_cyclic: pool[(vu_index - 1) mod size], one stable id per VU
    """

    __slots__ = ("_config", "_pool", "_rng", "_base")

    def __init__(
        self,
        config: ScenarioConfig,
        pool: TargetPool | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if config.scenario == ScenarioKind.ORDER:
            if not config.product_ids:
                raise StampedeConfigError("Order scenario needs a non-empty product catalog")
            if not config.order_patterns:
                raise StampedeConfigError("Order scenario needs at least one order pattern")
        self._config = config
        self._pool = pool if pool is not None else pool_from_config(config)
        self._rng = rng or random.Random()
        prefix = config.api_prefix.strip("/")
        self._base = config.base_url.rstrip("/") + (f"/{prefix}" if prefix else "")

    @property
    def pool(self) -> TargetPool:
        return self._pool

    def select_caller(self, vu_index: int) -> str:
        strategy = self._config.selection
        if strategy == SelectionStrategy.RANDOM:
            return self._pool.pick(self._rng)
        if strategy == SelectionStrategy.SEQUENTIAL_UNIQUE:
            return self._pool.at(vu_index)
        return self._pool.at(vu_index - 1)

    def pattern_for(self, vu_index: int) -> str:
        patterns = self._config.order_patterns
        return patterns[vu_index % len(patterns)]

    def next_request(self, vu_index: int, iteration: int) -> Request:
        """Request for this VU's iteration. iteration is informational (debug logging)."""
        caller = self.select_caller(vu_index)
        if self._config.scenario == ScenarioKind.ORDER:
            req = self._order_request(vu_index, caller)
        else:
            req = self._coupon_request(caller)
        logger.debug("vu=%d iteration=%d %s %s", vu_index, iteration, req.method, req.url)
        return req

    def _coupon_request(self, caller: str) -> Request:
        url = f"{self._base}/coupons/{self._config.coupon_id}/issue-fcfs/{caller}"
        return Request(
            method="POST",
            url=url,
            body=None,
            headers={**JSON_HEADERS, **self._config.headers},
            tag=COUPON_TAG,
            caller_id=caller,
        )

    def _order_request(self, vu_index: int, caller: str) -> Request:
        pattern = self.pattern_for(vu_index)
        url = f"{self._base}/orders/{pattern}/{caller}"
        return Request(
            method="POST",
            url=url,
            body=orjson.dumps(self.order_body()),
            headers={**JSON_HEADERS, **self._config.headers},
            tag=ORDER_TAG_PREFIX + pattern,
            caller_id=caller,
        )

    def order_body(self) -> dict:
        cfg = self._config
        rng = self._rng
        items = [
            {
                "productId": rng.choice(cfg.product_ids),
                "quantity": rng.randint(1, cfg.max_quantity),
            }
            for _ in range(rng.randint(1, cfg.max_items))
        ]
        return {
            "items": items,
            "userCouponId": cfg.user_coupon_id,
            "recipientName": cfg.recipient_name,
            "shippingAddress": cfg.shipping_address,
            "shippingPhone": cfg.shipping_phone,
        }
