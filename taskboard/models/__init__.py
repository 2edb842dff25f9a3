# SQLModel definitions, imported here to ensure metadata is populated for Alembic.
from .base import TimestampMixin, UUIDMixin, as_utc, utcnow  # noqa: F401
from .tenant import Tenant  # noqa: F401
from .user import User  # noqa: F401
from .membership import Membership  # noqa: F401
from .session import LoginSession  # noqa: F401
from .invitation import Invitation  # noqa: F401
from .api_key import ApiKey  # noqa: F401
from .password_reset import PasswordResetToken  # noqa: F401
