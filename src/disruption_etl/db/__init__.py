from .db import Database, duckdb_connection, load_wkt_gdf
from .schema import initialize

__all__ = ["Database", "duckdb_connection", "load_wkt_gdf", "initialize"]
