from .staging import stage_events, stage_file, write_to_parquet
from .warehouse import EventWarehouse

__all__ = ["EventWarehouse", "stage_events", "stage_file", "write_to_parquet"]
