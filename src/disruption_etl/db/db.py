import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import duckdb
import pandas as pd
from shapely import wkt
import geopandas as gpd

from ..settings import settings

MEMORY = ":memory:"


def get_duckdb_path() -> str:
    return str(settings.db_path)


class Database:
    """
    Process-local DuckDB connection shared by the stores and schedulers.

    DuckDB connections must not be used from two threads at once, so every
    statement goes through a re-entrant lock. ``transaction()`` holds the
    lock for the whole unit of work; a nested ``transaction()`` joins the
    outer one.
    """

    def __init__(self, path: Optional[str | Path] = None, read_only: bool = False):
        self.path = str(path) if path is not None else get_duckdb_path()
        if self.path != MEMORY:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.con = duckdb.connect(self.path, read_only=read_only)
        self._lock = threading.RLock()
        self._depth = 0

    @classmethod
    def in_memory(cls) -> "Database":
        return cls(MEMORY)

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.con
                finally:
                    self._depth -= 1
                return

            self.con.begin()
            self._depth = 1
            try:
                yield self.con
            except BaseException:
                self._depth = 0
                self.con.rollback()
                raise
            self._depth = 0
            self.con.commit()

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None:
        with self._lock:
            self.con.execute(sql, list(params or []))

    def fetchall(self, sql: str, params: Sequence[Any] | None = None) -> list[tuple]:
        with self._lock:
            return self.con.execute(sql, list(params or [])).fetchall()

    def fetchone(self, sql: str, params: Sequence[Any] | None = None) -> Optional[tuple]:
        with self._lock:
            return self.con.execute(sql, list(params or [])).fetchone()

    def fetchdf(self, sql: str, params: Sequence[Any] | None = None) -> pd.DataFrame:
        with self._lock:
            return self.con.execute(sql, list(params or [])).df()

    def close(self) -> None:
        with self._lock:
            self.con.close()


@contextmanager
def duckdb_connection(path: Optional[str | Path] = None, read_only: bool = False) -> Iterator[Database]:
    db = Database(path, read_only=read_only)
    try:
        yield db
    finally:
        db.close()


def load_wkt_gdf(db: Database, query: str, params: Sequence[Any] | None = None, geom_col: str = "geometry", crs: str = "EPSG:4326") -> gpd.GeoDataFrame:
    # Query DuckDB into a pandas DataFrame
    df = db.fetchdf(query, params)

    # Convert WKT → shapely geometry
    df[geom_col] = df[geom_col].apply(lambda g: wkt.loads(g) if isinstance(g, str) and g else None)

    # Convert to GeoDataFrame
    gdf = gpd.GeoDataFrame(df, geometry=geom_col, crs=crs)
    return gdf
