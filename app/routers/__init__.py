"""
app/routers/__init__.py

ルーターパッケージ
"""
from .stations import router as stations_router

__all__ = ["stations_router"]
