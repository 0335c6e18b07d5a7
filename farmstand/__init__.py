"""farmstand — 農産物マーケットプレイスの注文・在庫整合性コア"""

__version__ = "0.1.0"
