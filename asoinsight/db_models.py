"""SQLAlchemy models for the authorization store and the audit trail."""
from sqlalchemy import Column, String, Integer, Float, Boolean, ForeignKey, JSON, DateTime, Index
from sqlalchemy.sql import func
import uuid

from .database import Base


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


class Organization(Base):
    """A tenant boundary. Agencies may act on behalf of client organizations."""
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=True, unique=True)
    is_agency = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Organization(id={self.id}, name={self.name}, is_agency={self.is_agency})>"


class UserRole(Base):
    """Role membership. A null organization marks a platform-wide role."""
    __tablename__ = "user_roles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True, index=True)
    role = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<UserRole(user_id={self.user_id}, organization_id={self.organization_id}, role={self.role})>"


class AgencyClient(Base):
    """Directed agency -> client delegation. Grants access only while active."""
    __tablename__ = "agency_clients"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    agency_org_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    client_org_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_agency_clients_active", "agency_org_id", "is_active"),
    )

    def __repr__(self):
        return f"<AgencyClient(agency={self.agency_org_id}, client={self.client_org_id}, active={self.is_active})>"


class OrgAppAccess(Base):
    """App attachment to an organization. Detached rows are kept for audit."""
    __tablename__ = "org_app_access"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    app_id = Column(String(255), nullable=False, index=True)
    granted_by = Column(String(36), nullable=True)
    attached_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    detached_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_org_app_access_live", "organization_id", "detached_at"),
    )

    def __repr__(self):
        return f"<OrgAppAccess(org={self.organization_id}, app_id={self.app_id}, detached_at={self.detached_at})>"


class AnalyticsAuditLog(Base):
    """Who queried which analytics scope, with what outcome."""
    __tablename__ = "analytics_audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    request_id = Column(String(36), nullable=False, index=True)
    principal_id = Column(String(36), nullable=True, index=True)
    scope_kind = Column(String(20), nullable=True)
    org_ids = Column(JSON, nullable=True)
    requested_app_ids = Column(JSON, nullable=True)
    authorized_app_ids = Column(JSON, nullable=True)
    dropped_app_ids = Column(JSON, nullable=True)
    date_range = Column(JSON, nullable=True)
    row_count = Column(Integer, nullable=True)
    latency_ms = Column(Float, nullable=True)
    from_cache = Column(Boolean, default=False, nullable=False)
    outcome = Column(String(20), nullable=False, index=True)
    error_kind = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index("idx_analytics_audit_principal", "principal_id", "created_at"),
        Index("idx_analytics_audit_outcome", "outcome", "created_at"),
    )

    def __repr__(self):
        return f"<AnalyticsAuditLog(request_id={self.request_id}, principal_id={self.principal_id}, outcome={self.outcome})>"
