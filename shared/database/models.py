"""Modelos SQLAlchemy del registro de tickets"""
from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from shared.database.connection import Base

# Rango de las columnas Integer (ids y capacidad)
MAX_INTEGER_COLUMN = 2**31 - 1


class EventRegistry(Base):
    __tablename__ = "event_registries"

    reference = Column(String(42), primary_key=True)
    admin = Column(String(42), nullable=False)
    name = Column(String, nullable=False)
    symbol = Column(String, nullable=False, server_default="")
    venue = Column(String, nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    metadata_uri = Column(String, nullable=False, server_default="")
    capacity = Column(Integer, nullable=False)  # Inmutable
    issued_count = Column(Integer, nullable=False, server_default="0")  # Solo crece
    price = Column(BigInteger, nullable=False, server_default="0")
    balance = Column(BigInteger, nullable=False, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Credential(Base):
    __tablename__ = "credentials"

    registry_reference = Column(String(42), ForeignKey("event_registries.reference"), primary_key=True)
    credential_id = Column(Integer, primary_key=True, autoincrement=False)
    owner = Column(String(42), nullable=False, index=True)
    consumed = Column(Boolean, nullable=False, default=False)  # false -> true, nunca vuelve
    consumed_by = Column(String(42), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    issued_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class VerifierGrant(Base):
    __tablename__ = "registry_verifiers"

    registry_reference = Column(String(42), ForeignKey("event_registries.reference"), primary_key=True)
    identity = Column(String(42), primary_key=True)
    granted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class IssuanceLog(Base):
    __tablename__ = "issuance_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    registry_reference = Column(String(42), ForeignKey("event_registries.reference"), nullable=False, index=True)
    credential_id = Column(Integer, nullable=False)
    owner = Column(String(42), nullable=False)
    payer = Column(String(42), nullable=False)
    amount_paid = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ConsumptionLog(Base):
    __tablename__ = "consumption_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    registry_reference = Column(String(42), ForeignKey("event_registries.reference"), nullable=False, index=True)
    credential_id = Column(Integer, nullable=False)
    verifier = Column(String(42), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=False)
