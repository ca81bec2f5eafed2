# models.py - Database models for the GRCompliance API
# - UUID string primary keys everywhere
# - Clients (tenants) own every domain row via client_id
# - Users join clients through ClientMembership (owner/admin/editor/viewer)
# - Soft deletes on clients and users
# - Append-only audit log with validated details payloads

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    """Global (platform-wide) role"""
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    OWNER = "owner"
    USER = "user"


class ClientRole(str, PyEnum):
    """Role inside a single client workspace"""
    OWNER = "owner"
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class PlanTier(str, PyEnum):
    FREE = "free"
    STARTUP = "startup"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class AuthAssurance(str, PyEnum):
    AAL1 = "aal1"
    AAL2 = "aal2"


class BoardStatus(str, PyEnum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(str, PyEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ControlStatus(str, PyEnum):
    NOT_IMPLEMENTED = "not_implemented"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    NOT_APPLICABLE = "not_applicable"


class PolicyStatus(str, PyEnum):
    DRAFT = "draft"
    REVIEW = "review"
    APPROVED = "approved"
    ARCHIVED = "archived"


class EvidenceStatus(str, PyEnum):
    PENDING = "pending"
    COLLECTED = "collected"
    VERIFIED = "verified"
    EXPIRED = "expired"
    NOT_APPLICABLE = "not_applicable"


class RemediationStatus(str, PyEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TreatmentStatus(str, PyEnum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    VERIFIED = "verified"


class TreatmentType(str, PyEnum):
    MITIGATE = "mitigate"
    AVOID = "avoid"
    TRANSFER = "transfer"
    ACCEPT = "accept"


class DsarType(str, PyEnum):
    ACCESS = "access"
    DELETION = "deletion"
    RECTIFICATION = "rectification"
    PORTABILITY = "portability"
    RESTRICTION = "restriction"


class DsarStatus(str, PyEnum):
    NEW = "new"
    VERIFYING_IDENTITY = "verifying_identity"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    REJECTED = "rejected"


class AuditSeverity(str, PyEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ============================================================
# CLIENTS (TENANTS)
# ============================================================

class Client(Base):
    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    industry = Column(String, nullable=True)
    size = Column(String, nullable=True)
    status = Column(String, default="active", index=True)
    plan_tier = Column(SQLEnum(PlanTier), default=PlanTier.FREE, nullable=False)
    require_mfa = Column(Boolean, default=False, nullable=False)
    primary_contact_name = Column(String, nullable=True)
    primary_contact_email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    memberships = relationship("ClientMembership", back_populates="client", cascade="all, delete-orphan")


# ============================================================
# USERS & MEMBERSHIP
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.USER, nullable=False, index=True)
    mfa_enabled = Column(Boolean, default=False)
    mfa_secret = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    memberships = relationship("ClientMembership", back_populates="user", cascade="all, delete-orphan")


class ClientMembership(Base):
    """Grants a user a role inside one client workspace"""
    __tablename__ = "client_memberships"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    role = Column(SQLEnum(ClientRole), default=ClientRole.VIEWER, nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="memberships")
    client = relationship("Client", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="uq_membership_user_client"),
    )


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ============================================================
# CONTROLS & EVIDENCE
# ============================================================

class Control(Base):
    """Framework control catalog entry (shared across clients)"""
    __tablename__ = "controls"

    id = Column(String, primary_key=True, default=new_uuid)
    code = Column(String, nullable=False, index=True)  # e.g. "PCI-8.4.2"
    name = Column(String, nullable=False)
    framework = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("framework", "code", name="uq_control_framework_code"),
    )


class ClientControl(Base):
    __tablename__ = "client_controls"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    control_id = Column(String, ForeignKey("controls.id"), nullable=False, index=True)
    custom_description = Column(Text, nullable=True)
    status = Column(SQLEnum(ControlStatus), default=ControlStatus.NOT_IMPLEMENTED, nullable=False)
    owner = Column(String, nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    implementation_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    control = relationship("Control", lazy="joined")

    __table_args__ = (
        Index("idx_client_control_status", "client_id", "status"),
    )


class Evidence(Base):
    __tablename__ = "evidence"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    client_control_id = Column(String, ForeignKey("client_controls.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    evidence_type = Column(String, nullable=True)
    status = Column(SQLEnum(EvidenceStatus), default=EvidenceStatus.PENDING, nullable=False)
    owner = Column(String, nullable=True)
    location = Column(String, nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# POLICIES
# ============================================================

class Policy(Base):
    __tablename__ = "policies"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    status = Column(SQLEnum(PolicyStatus), default=PolicyStatus.DRAFT, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    owner = Column(String, nullable=True)
    approved_by = Column(String, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# RISK REGISTER
# ============================================================

class RiskAssessment(Base):
    __tablename__ = "risk_assessments"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    likelihood = Column(Integer, default=1, nullable=False)  # 1-5
    impact = Column(Integer, default=1, nullable=False)  # 1-5
    score = Column(Integer, default=1, nullable=False)
    level = Column(String, default="low", nullable=False)
    status = Column(String, default="open", nullable=False)
    assessor = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RiskTreatment(Base):
    __tablename__ = "risk_treatments"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    risk_assessment_id = Column(String, ForeignKey("risk_assessments.id"), nullable=True, index=True)
    treatment_type = Column(SQLEnum(TreatmentType), default=TreatmentType.MITIGATE, nullable=False)
    strategy = Column(Text, nullable=True)
    justification = Column(Text, nullable=True)
    owner = Column(String, nullable=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    status = Column(SQLEnum(TreatmentStatus), default=TreatmentStatus.PLANNED, nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# WORK ITEMS
# ============================================================

class RemediationTask(Base):
    __tablename__ = "remediation_tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    client_control_id = Column(String, ForeignKey("client_controls.id"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    status = Column(SQLEnum(RemediationStatus), default=RemediationStatus.OPEN, nullable=False)
    assignee_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    assignee = relationship("User", lazy="joined")


class ProjectTask(Base):
    """Native card on the unified task board"""
    __tablename__ = "project_tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(BoardStatus), default=BoardStatus.TODO, nullable=False)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    assignee_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    position = Column(Integer, default=0, nullable=False)
    tags = Column(JSON, default=list)
    due_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    assignee = relationship("User", lazy="joined")

    __table_args__ = (
        Index("idx_project_task_client_status", "client_id", "status"),
    )


# ============================================================
# VENDORS
# ============================================================

class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    website = Column(String, nullable=True)
    criticality = Column(String, default="low", nullable=False)  # high, medium, low
    data_access = Column(String, default="internal", nullable=False)  # restricted, confidential, internal, public
    status = Column(String, default="active", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# PRIVACY (DSAR)
# ============================================================

class DsarRequest(Base):
    __tablename__ = "dsar_requests"

    id = Column(String, primary_key=True, default=new_uuid)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    reference = Column(String, nullable=False, index=True)  # DSAR-2026-001
    request_type = Column(SQLEnum(DsarType), nullable=False)
    status = Column(SQLEnum(DsarStatus), default=DsarStatus.NEW, nullable=False)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    subject_name = Column(String, nullable=True)
    subject_email = Column(String, nullable=True)
    verification_status = Column(String, default="pending", nullable=False)
    request_date = Column(DateTime(timezone=True), default=utcnow)
    due_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("client_id", "reference", name="uq_dsar_client_reference"),
    )


# ============================================================
# AUDIT LOGS (append-only)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    client_id = Column(String, nullable=True, index=True)  # null for platform events
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    action = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    severity = Column(SQLEnum(AuditSeverity), default=AuditSeverity.INFO, nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    request_id = Column(String, nullable=True, index=True)

    __table_args__ = (
        Index("idx_audit_client_timestamp", "client_id", "timestamp"),
    )
