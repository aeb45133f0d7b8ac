# collectsync/schemas/__init__.py
"""
Schemas package

本包保持“安静”：不做聚合导出，需要时请显式从具体模块导入，例如：
    from collectsync.schemas.sync_payloads import OrderLinePayload
"""

__all__: list[str] = []
