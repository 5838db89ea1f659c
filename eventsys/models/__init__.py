# Models package: import all models here so Alembic can discover them.

from eventsys.models.user import User  # noqa: F401
from eventsys.models.event import Event, Attendance  # noqa: F401
from eventsys.models.user_attendance import UserAttendance  # noqa: F401
from eventsys.models.payment_session import PaymentSession  # noqa: F401
from eventsys.models.mpesa_callback import MpesaCallback  # noqa: F401
from eventsys.models.projection_repair import ProjectionRepair  # noqa: F401
from eventsys.models.audit import AuditEvent  # noqa: F401
