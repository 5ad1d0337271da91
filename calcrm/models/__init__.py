# Import the declarative base
from calcrm.db.base import Base

# Import all models for Alembic/SQLAlchemy discovery
# Note: These imports are required so that they register themselves on Base.metadata
from calcrm.models.profile import Profile
from calcrm.models.company import Company
from calcrm.models.branch import Branch
from calcrm.models.equipment import Equipment
from calcrm.models.job import Job
from calcrm.models.quote import Quote
from calcrm.models.certificate import Certificate
from calcrm.models.record_lock import RecordLock
from calcrm.models.user_presence import UserPresence

__all__ = [
    "Base",
    "Branch",
    "Certificate",
    "Company",
    "Equipment",
    "Job",
    "Profile",
    "Quote",
    "RecordLock",
    "UserPresence",
]
