# model/inventory/__init__.py
import os
from typing import Optional

import tigerbeetle as tb

from ...infra.sql import Database
from ._sql import SqlInventory
from ._tigerbeetle import TigerBeetleInventory

BACKEND = os.getenv("INVENTORY_BACKEND", "sql").lower()  # 'sql' | 'tb'


def new_inventory(db: Database, *, tb_client: Optional[tb.ClientAsync] = None):
    if BACKEND == "tb":
        if tb_client is None:
            raise RuntimeError(
                "TigerBeetleInventory requires tb_client=tb.ClientAsync"
            )
        return TigerBeetleInventory(db=db, client=tb_client)
    return SqlInventory(db=db)


__all__ = ["SqlInventory", "TigerBeetleInventory", "new_inventory", "BACKEND"]
