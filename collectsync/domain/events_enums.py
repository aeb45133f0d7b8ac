# collectsync/domain/events_enums.py
from enum import Enum


class AllocationOrigin(str, Enum):
    DRAFT = "draft"  # 本地提议，尚未被台账确认
    SAVED = "saved"  # 已在权威台账中


class AllocationState(str, Enum):
    DRAFT = "draft"
    PENDING_COMMIT = "pendingCommit"  # 请求已发出，等待 ack
    PENDING_CONFIRM = "pendingConfirm"  # ack 成功，等待推送确认
    SAVED = "saved"
    PENDING_UNDO = "pendingUndo"  # 撤销请求已发出
    REMOVED = "removed"


# 合法跃迁表；未列出的一律视为非法
ALLOWED_TRANSITIONS = {
    AllocationState.DRAFT: {AllocationState.PENDING_COMMIT},
    AllocationState.PENDING_COMMIT: {AllocationState.DRAFT, AllocationState.PENDING_CONFIRM},
    AllocationState.PENDING_CONFIRM: {AllocationState.SAVED},
    AllocationState.SAVED: {AllocationState.PENDING_UNDO},
    AllocationState.PENDING_UNDO: {AllocationState.SAVED, AllocationState.REMOVED},
    AllocationState.REMOVED: set(),
}


class PushKind(str, Enum):
    LINE_UPDATED = "lineUpdated"
    LINE_ADDED = "lineAdded"
    LINE_REMOVED = "lineRemoved"
    LINES_SYNCED = "linesSynced"  # 服务端要求整单重拉
    EVENT = "event"  # 单条离散台账事件


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"  # 幂等命中
    TOMBSTONED = "tombstoned"  # 已本地撤销，等待权威删除传播


class ErrorCode(str, Enum):
    INVALID_QUANTITY = "INVALID_QUANTITY"
    MISSING_COLLECTOR = "MISSING_COLLECTOR"
    MISSING_BATCH = "MISSING_BATCH"
    MISSING_SOURCE = "MISSING_SOURCE"
    MISSING_DESTINATION = "MISSING_DESTINATION"
    SAME_LOCATION = "SAME_LOCATION"
    EXCEEDS_AVAILABLE = "EXCEEDS_AVAILABLE"
    UNKNOWN_ROW = "UNKNOWN_ROW"
    UNKNOWN_LINE = "UNKNOWN_LINE"
    UNKNOWN_SESSION = "UNKNOWN_SESSION"
    ROW_BUSY = "ROW_BUSY"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"  # 非法跃迁
    CHANNEL_OFFLINE = "CHANNEL_OFFLINE"
    LINE_CLOSED = "LINE_CLOSED"
    STALE_DRAFT = "STALE_DRAFT"  # 提交前复核：草稿已不再满足可用量
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"  # 上游 ack.ok = false
    UPSTREAM_ERROR = "UPSTREAM_ERROR"  # 上游网络错误
