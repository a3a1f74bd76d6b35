from .connection import (
    get_db, get_engine, get_session_factory, build_engine, build_session_factory,
    init_db, dispose_engine, Base
)

from .models import (
    ContactDB, OperatorDB, ReconciliationLogDB, PaymentSourceDB
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'build_engine',
    'build_session_factory', 'init_db', 'dispose_engine', 'Base',
    'ContactDB', 'OperatorDB', 'ReconciliationLogDB', 'PaymentSourceDB',
]
