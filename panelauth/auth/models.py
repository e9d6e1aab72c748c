from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from panelauth.database.database import Base, utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Stored lowercase
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(64), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)

    # Panel fields issued at account creation
    uuid = Column(String(36), unique=True, nullable=False)
    passwd = Column(String(64), nullable=False)
    token = Column(String(64), unique=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    status = Column(Integer, default=1, nullable=False)
    expire_time = Column(DateTime, nullable=True)

    # Invites
    invite_code = Column(String(16), unique=True, nullable=True)
    invited_by = Column(Integer, nullable=True)
    invite_limit = Column(Integer, default=0, nullable=False)
    invite_used = Column(Integer, default=0, nullable=False)

    # OAuth linkage
    google_sub = Column(String(255), unique=True, nullable=True)
    github_id = Column(String(64), unique=True, nullable=True)
    oauth_provider = Column(String(32), nullable=True)
    first_oauth_login_at = Column(DateTime, nullable=True)
    last_oauth_login_at = Column(DateTime, nullable=True)

    # TOTP / MFA, only written through two_factor.write_two_factor_state
    two_factor_enabled = Column(Boolean, default=False, nullable=False)
    two_factor_secret = Column(Text, nullable=True)
    two_factor_temp_secret = Column(Text, nullable=True)
    # JSON list of sha256 hashes
    two_factor_backup_codes = Column(Text, nullable=True)
    two_factor_confirmed_at = Column(DateTime, nullable=True)

    last_login_time = Column(DateTime, nullable=True)
    last_login_ip = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Passkey(Base):
    __tablename__ = "passkeys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    credential_id = Column(String(512), unique=True, index=True, nullable=False)
    public_key = Column(Text, nullable=False)
    alg = Column(Integer, nullable=True)
    user_handle = Column(String(255), nullable=True)
    rp_id = Column(String(255), nullable=True)
    transports = Column(Text, nullable=True)
    sign_count = Column(Integer, default=0, nullable=False)
    device_name = Column(String(64), nullable=True)
    aaguid = Column(String(64), nullable=True)
    backup_eligible = Column(Boolean, default=False, nullable=False)
    backup_state = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_used_at = Column(DateTime, nullable=True)


class TrustedDevice(Base):
    __tablename__ = "two_factor_trusted_devices"
    __table_args__ = (UniqueConstraint("user_id", "token_hash", name="uq_trusted_device_token"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    token_hash = Column(String(64), nullable=False)
    device_name = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    disabled = Column(Boolean, default=False, nullable=False)


class LoginLog(Base):
    __tablename__ = "login_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=True)
    login_ip = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    # 1 success, 0 failure
    login_status = Column(Integer, nullable=False)
    failure_reason = Column(String(255), nullable=True)
    login_method = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class EphemeralEntry(Base):
    __tablename__ = "ephemeral_entries"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(DateTime, index=True, nullable=False)
