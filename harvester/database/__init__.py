# Database module
from .db import RecordStore, SQLiteRecordStore
from .export_json import JsonFileSink

__all__ = ['RecordStore', 'SQLiteRecordStore', 'JsonFileSink']
