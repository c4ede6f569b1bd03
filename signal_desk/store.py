from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional

from .lifecycle import is_duplicate
from .models import PaperTest

log = logging.getLogger("store")


@dataclass(frozen=True)
class PromotionResult:
    outcome: str  # created | duplicate
    test: PaperTest

    @property
    def created(self) -> bool:
        return self.outcome == "created"


class TestStore:
    """JSON-file collection of paper tests.

    All read-modify-write cycles of one process share a lock and write through a
    temp file + rename. Several processes on the same file can still race.
    Records that fail to parse are skipped on read and written back as-is.
    """

    __test__ = False  # not a pytest class

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        # records that failed to parse; written back untouched
        self._unparsed: List[Any] = []

    # Raw file access (call with the lock held) ------------------------------

    def _reset(self, reason: str) -> None:
        log.warning("store_reset path=%s reason=%s", self.path, reason)
        self._unparsed = []
        self._write([])

    def _read(self) -> List[PaperTest]:
        self._unparsed = []
        if not self.path.exists():
            self._reset("missing")
            return []
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            log.warning("store_read_failed path=%s err=%s", self.path, e)
            return []
        if not text.strip():
            return []
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            self._reset(f"invalid_json {e.msg}")
            return []
        if not isinstance(raw, list):
            self._reset("not_a_list")
            return []

        out: List[PaperTest] = []
        for rec in raw:
            try:
                out.append(PaperTest.from_dict(rec))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("store_skip_record record=%s err=%r", str(rec)[:200], e)
                self._unparsed.append(rec)
        return out

    def _write(self, tests: Iterable[PaperTest]) -> None:
        payload: List[Any] = [t.to_dict() for t in tests]
        payload.extend(self._unparsed)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp_path, self.path)

    # Public API -------------------------------------------------------------

    async def load_tests(self) -> List[PaperTest]:
        async with self._lock:
            return self._read()

    async def get_test(self, test_id: str) -> Optional[PaperTest]:
        for t in await self.load_tests():
            if t.id == test_id:
                return t
        return None

    async def append_test(self, test: PaperTest) -> str:
        async with self._lock:
            tests = self._read()
            tests.append(test)
            self._write(tests)
        log.info("test_saved id=%s symbol=%s type=%s entry=%s", test.id, test.symbol, test.type, test.entry_price)
        return test.id

    async def add_if_unique(self, test: PaperTest, *, window_s: int, price_tolerance: float = 0.01, now_s: Optional[int] = None) -> PromotionResult:
        now = int(time.time()) if now_s is None else now_s
        async with self._lock:
            tests = self._read()
            if is_duplicate(test, tests, now_s=now, window_s=window_s, price_tolerance=price_tolerance):
                log.info("test_duplicate symbol=%s type=%s entry=%s", test.symbol, test.type, test.entry_price)
                return PromotionResult(outcome="duplicate", test=test)
            tests.append(test)
            self._write(tests)
        log.info("test_saved id=%s symbol=%s type=%s entry=%s", test.id, test.symbol, test.type, test.entry_price)
        return PromotionResult(outcome="created", test=test)

    async def update_test(self, test: PaperTest) -> bool:
        return bool(await self.update_tests([test]))

    async def update_tests(self, updates: Iterable[PaperTest]) -> List[str]:
        """Write back changed records by id; returns the ids actually written.

        A stored record that already left ``active`` is frozen: any change to it
        is rejected.
        """
        by_id = {t.id: t for t in updates}
        written: List[str] = []
        if not by_id:
            return written
        async with self._lock:
            tests = self._read()
            for i, cur in enumerate(tests):
                new = by_id.get(cur.id)
                if new is None:
                    continue
                if not cur.is_active and new != cur:
                    log.warning("test_update_rejected id=%s stored=%s new=%s", cur.id, cur.status, new.status)
                    continue
                tests[i] = new
                written.append(cur.id)
            if written:
                self._write(tests)
        return written

    async def delete_test(self, test_id: str) -> bool:
        async with self._lock:
            tests = self._read()
            kept = [t for t in tests if t.id != test_id]
            if len(kept) == len(tests):
                return False
            self._write(kept)
        log.info("test_deleted id=%s", test_id)
        return True
