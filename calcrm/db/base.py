from typing import Any

from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    id: Any

    # Class 'RecordLock' automatically becomes table 'record_lock'
    @declared_attr.directive
    def __tablename__(cls) -> str:
        import re
        # Converts CamelCase to snake_case
        return re.sub(r'(?<!^)(?=[A-Z])', '_', cls.__name__).lower()
