from .connection import create_engine, create_session_factory, init_db, Base

# Import discrepancy models to ensure they are registered with Base
from .discrepancy_models import DiscrepancyDB, DiscrepancyType, UTCDateTime, utc_now

__all__ = [
    'create_engine', 'create_session_factory', 'init_db', 'Base',
    'DiscrepancyDB', 'DiscrepancyType', 'UTCDateTime', 'utc_now',
]
