"""Re-verify recorded bindings: is every bound file still what the catalog says?"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from ..config import CuratorConfig
from ..containers import CodecRegistry, ContainerKind
from ..core.catalog_models import CatalogSnapshot, RomBinding
from ..core.catalog_store import CatalogStore
from ..hash_utils import compute_fingerprint
from ..utils.thread_pool import BoundedWorkerPool
from .models import CancelToken, CheckItem, CheckReport, CheckStatus, ProgressCallback
from .reconcile_controller import READ_ERRORS

logger = logging.getLogger(__name__)


class _BindingChecker:
    def __init__(self, snapshot: CatalogSnapshot, registry: CodecRegistry, pool: BoundedWorkerPool,
                 config: CuratorConfig) -> None:
        self.snapshot = snapshot
        self.registry = registry
        self.pool = pool
        self.config = config

    def __call__(self, binding: RomBinding) -> CheckItem:
        rom = self.snapshot.roms_by_id[binding.rom_id]

        def item(status: CheckStatus, reason: Optional[str] = None) -> CheckItem:
            return CheckItem(
                rom_id=rom.id,
                rom_name=rom.name,
                path=binding.path,
                entry_name=binding.entry_name,
                status=status,
                reason=reason,
            )

        path = Path(binding.path)
        if not path.is_file():
            return item(CheckStatus.MISSING_FILE, "file no longer exists")
        try:
            kind = self.registry.detect_kind(path)
            if kind is not ContainerKind.parse(binding.container):
                return item(CheckStatus.CHANGED, f"container is now {kind.value}")
            codec = self.registry.codec(kind)
            kinds = rom.digests.kinds() or ("sha1",)
            with self.pool.io_slot(), codec.open_entry(path, binding.entry_name) as stream:
                fingerprint = compute_fingerprint(
                    stream, kinds, header=self.snapshot.header, chunk_size=self.config.matching.chunk_size
                )
        except READ_ERRORS as exc:
            return item(CheckStatus.ERROR, str(exc))

        if fingerprint.content_size != rom.size:
            return item(CheckStatus.CHANGED, f"size {fingerprint.content_size} != {rom.size}")
        if not rom.digests.matches(fingerprint.digests, allow_weak=self.config.matching.allow_weak_match):
            return item(CheckStatus.CHANGED, "digest differs")
        return item(CheckStatus.OK)


def check_snapshot(
    snapshot: CatalogSnapshot,
    *,
    config: Optional[CuratorConfig] = None,
    registry: Optional[CodecRegistry] = None,
    cancel_token: Optional[CancelToken] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> CheckReport:
    cfg = config or CuratorConfig()
    registry = registry or CodecRegistry(cfg.conversion)
    bindings: List[RomBinding] = [snapshot.bindings[k] for k in sorted(snapshot.bindings)]
    pool = BoundedWorkerPool(
        workers=cfg.performance.workers,
        io_limit=cfg.performance.io_limit,
        cancel_token=cancel_token,
        name_prefix="check",
    )
    run = pool.run(_BindingChecker(snapshot, registry, pool, cfg), bindings, progress_cb)

    items: List[CheckItem] = []
    for outcome in run.outcomes:
        if not outcome.started:
            continue
        if outcome.error is not None:
            rom = snapshot.roms_by_id[outcome.item.rom_id]
            items.append(CheckItem(rom.id, rom.name, outcome.item.path, outcome.item.entry_name,
                                   CheckStatus.ERROR, str(outcome.error)))
        else:
            items.append(outcome.result)

    report = CheckReport(
        system=snapshot.system.name,
        items=tuple(items),
        unbound=len(snapshot.roms) - len(bindings),
        cancelled=run.cancelled,
    )
    logger.info("Check %s: %s", snapshot.system.name, report.counts)
    return report


def check_library(
    store: CatalogStore,
    system: str,
    *,
    config: Optional[CuratorConfig] = None,
    cancel_token: Optional[CancelToken] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> CheckReport:
    return check_snapshot(
        store.load_snapshot(system), config=config, cancel_token=cancel_token, progress_cb=progress_cb
    )

