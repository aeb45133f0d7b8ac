# collectsync/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

try:
    # multiprocess 支持（需在进程启动前设置好 PROMETHEUS_MULTIPROC_DIR）
    from prometheus_client import REGISTRY, CollectorRegistry, multiprocess

    _HAVE_MP = True
except ImportError:
    from prometheus_client import REGISTRY

    _HAVE_MP = False

# 业务指标
COMMIT_ROWS = Counter(
    "collect_commit_rows_total", "Draft rows submitted on commit", ["flow", "result"]
)
UNDO = Counter("collect_undo_total", "Undo requests of saved rows", ["flow", "result"])
PUSH = Counter("ledger_push_events_total", "Push events applied to ledger", ["kind", "outcome"])

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程：直接导出默认 REGISTRY；
    多进程：创建临时 CollectorRegistry，由 MultiProcessCollector 合并各分片。
    """
    if _HAVE_MP and os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
