"""
Audit trail model. Append-only, written by the audit sink worker.
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from .database import Base


class AuditAction:
    CREATE_SLOTS = "CREATE_SLOTS"
    BLOCK_SLOTS = "BLOCK_SLOTS"
    UNBLOCK_SLOTS = "UNBLOCK_SLOTS"
    VIEW_SCHEDULE = "VIEW_SCHEDULE"
    VIEW_TODAY_SCHEDULE = "VIEW_TODAY_SCHEDULE"
    CREATE_APPOINTMENT = "CREATE_APPOINTMENT"
    RESCHEDULE_APPOINTMENT = "RESCHEDULE_APPOINTMENT"
    CANCEL_APPOINTMENT = "CANCEL_APPOINTMENT"
    CONFIRM_APPOINTMENT = "CONFIRM_APPOINTMENT"
    COMPLETE_APPOINTMENT = "COMPLETE_APPOINTMENT"
    PROCESS_PAYMENT = "PROCESS_PAYMENT"
    PROCESS_REFUND = "PROCESS_REFUND"

    ALL = (
        CREATE_SLOTS,
        BLOCK_SLOTS,
        UNBLOCK_SLOTS,
        VIEW_SCHEDULE,
        VIEW_TODAY_SCHEDULE,
        CREATE_APPOINTMENT,
        RESCHEDULE_APPOINTMENT,
        CANCEL_APPOINTMENT,
        CONFIRM_APPOINTMENT,
        COMPLETE_APPOINTMENT,
        PROCESS_PAYMENT,
        PROCESS_REFUND,
    )


class AuditStatus:
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WARNING = "WARNING"


class AuditLog(Base):
    """Tracks booking activity for compliance"""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, nullable=True, index=True)
    actor_role = Column(String(20), nullable=True)
    action = Column(String(50), nullable=False, index=True)
    resource_type = Column(String(50), nullable=False)  # DoctorSlot, Appointment, Payment
    resource_id = Column(String(64), nullable=True, index=True)
    patient_id = Column(Integer, nullable=True, index=True)

    # Change snapshots
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)

    status = Column(String(10), default=AuditStatus.SUCCESS, nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    description = Column(String(500), nullable=True)
    extra = Column("metadata", JSON, nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now(), index=True)
