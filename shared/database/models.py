"""Modelos SQLAlchemy del subsistema de validación segura de tickets"""
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Float, ForeignKey, LargeBinary,
    UniqueConstraint, Index, JSON, Uuid, text
)
from sqlalchemy.orm import relationship
import uuid

from shared.database.connection import Base
from shared.utils.clock import utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False, index=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    biometric_enrolled = Column(Boolean, nullable=False, default=False)
    biometric_consent_at = Column(DateTime, nullable=True)
    biometric_consent_version = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    tickets = relationship("Ticket", back_populates="user")


class Festival(Base):
    __tablename__ = "festivals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    ble_enabled = Column(Boolean, nullable=False, default=True)
    biometric_enabled = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    tickets = relationship("Ticket", back_populates="festival")
    beacons = relationship("BleBeacon", back_populates="festival")


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    festival_id = Column(Uuid, ForeignKey("festivals.id"), nullable=False, index=True)
    template_id = Column(Uuid, nullable=True)
    holder_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")  # active, used, cancelled
    valid_from = Column(DateTime, nullable=False)
    valid_to = Column(DateTime, nullable=False)
    ble_validation_required = Column(Boolean, nullable=False, default=False)
    biometric_required = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="tickets")
    festival = relationship("Festival", back_populates="tickets")
    credentials = relationship("SecureCredential", back_populates="ticket")
    validations = relationship("TicketValidation", back_populates="ticket")


class EncryptionKey(Base):
    __tablename__ = "encryption_keys"
    __table_args__ = (
        UniqueConstraint("key_type", "key_version", name="uq_encryption_keys_type_version"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    key_type = Column(String, nullable=False, index=True)  # qr_encryption, biometric_encryption
    key_version = Column(Integer, nullable=False)
    wrapped_key = Column(LargeBinary, nullable=False)  # nonce || ciphertext || tag bajo la llave maestra
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class SecureCredential(Base):
    __tablename__ = "secure_credentials"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id = Column(Uuid, ForeignKey("tickets.id"), nullable=False, index=True)
    public_token = Column(String, unique=True, index=True, nullable=False)
    ciphertext = Column(LargeBinary, nullable=False)
    auth_tag = Column(LargeBinary, nullable=False)
    nonce = Column(LargeBinary, nullable=False)
    key_id = Column(Uuid, ForeignKey("encryption_keys.id"), nullable=False)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime, nullable=True)
    used_by = Column(String, nullable=True)  # validador que escaneó
    used_location = Column(String, nullable=True)

    ticket = relationship("Ticket", back_populates="credentials")


class BleBeacon(Base):
    __tablename__ = "ble_beacons"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    festival_id = Column(Uuid, ForeignKey("festivals.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    location_name = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    mac_address = Column(String, unique=True, nullable=False)
    uuid = Column(String, nullable=False)
    major = Column(Integer, nullable=False)
    minor = Column(Integer, nullable=False)
    tx_power = Column(Integer, nullable=False, default=-59)
    rssi_threshold = Column(Integer, nullable=False, default=-70)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    festival = relationship("Festival", back_populates="beacons")
    sessions = relationship("ProximitySession", back_populates="beacon")


class ProximitySession(Base):
    __tablename__ = "ble_validation_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_token = Column(String, unique=True, index=True, nullable=False)
    beacon_id = Column(Uuid, ForeignKey("ble_beacons.id"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    device_id = Column(String, nullable=False)
    state = Column(String, nullable=False, default="pending")  # pending, validated, expired, cancelled
    proximity_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    validated_at = Column(DateTime, nullable=True)

    beacon = relationship("BleBeacon", back_populates="sessions")


class BiometricTemplate(Base):
    __tablename__ = "biometric_templates"
    __table_args__ = (
        Index("ix_biometric_templates_user_type", "user_id", "biometric_type"),
        # Una sola plantilla activa por (usuario, tipo)
        Index(
            "uq_biometric_templates_active",
            "user_id",
            "biometric_type",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    biometric_type = Column(String, nullable=False)  # face, fingerprint, voice, iris
    encrypted_template = Column(LargeBinary, nullable=False)
    nonce = Column(LargeBinary, nullable=False)
    auth_tag = Column(LargeBinary, nullable=False)
    key_id = Column(Uuid, ForeignKey("encryption_keys.id"), nullable=False)
    template_hash = Column(String, nullable=False)  # HMAC-SHA256 bajo la llave de la plantilla
    quality_score = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    enrolled_at = Column(DateTime, default=utcnow, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    extra_metadata = Column(JSON, nullable=True)


class BiometricVerificationAttempt(Base):
    __tablename__ = "biometric_verification_attempts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    session_id = Column(String, nullable=True)
    biometric_type = Column(String, nullable=False)
    result = Column(String, nullable=False)  # success, failure, error
    confidence_score = Column(Float, nullable=False, default=0.0)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    attempted_at = Column(DateTime, default=utcnow, nullable=False)


class TicketValidation(Base):
    __tablename__ = "ticket_validations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id = Column(Uuid, ForeignKey("tickets.id"), nullable=False, index=True)
    credential_token = Column(String, nullable=False, index=True)
    validated_at = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default="used")  # used, rejected
    result_code = Column(String, nullable=False)
    method = Column(String, nullable=False)  # qr_only, qr_ble, qr_biometric, qr_ble_biometric
    biometric_confidence = Column(Float, nullable=True)
    proximity_session_id = Column(Uuid, nullable=True)
    beacon_id = Column(Uuid, nullable=True)
    validator_id = Column(String, nullable=True)
    location = Column(String, nullable=True)
    device_info = Column(JSON, nullable=True)

    ticket = relationship("Ticket", back_populates="validations")
