from ordercore.core.config import settings
from ordercore.core.database import get_db, Base, get_db_session
from ordercore.core.exceptions import (
    OrderCoreError,
    NotFoundError,
    InvalidTransitionError,
    ConflictError,
    ForbiddenError,
    OrderValidationError,
    RecipientNotFoundError,
)
