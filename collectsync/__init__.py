# collectsync/__init__.py
"""
collectsync：多人并发拣货（collect）/ 库位移库（bin-to-bin）的本地草稿与服务端台账对账核心。
"""

__version__ = "0.3.0"
