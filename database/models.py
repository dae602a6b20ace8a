# Database Models for FlowPay Platform

from sqlalchemy import Column, String, DateTime, Enum, Boolean
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid
import enum

Base = declarative_base()

def generate_uuid():
    return str(uuid.uuid4())

# Enums
class UserType(str, enum.Enum):
    BRAND = "brand"
    CREATOR = "creator"
    ADMIN = "admin"


# Models
class User(Base):
    """
    Minimal account record. Profiles, onboarding screens and KYC live in
    collaborating services; this table only carries what the escrow core
    needs to authorize actors and address them at the payments provider.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))
    user_type = Column(Enum(UserType, values_callable=lambda x: [e.value for e in x], name="usertype"), default=UserType.BRAND)

    # Payer onboarding: saved card authorization at the provider
    payment_authorization_code = Column(String(100))
    # Payee onboarding: transfer recipient at the provider
    payment_recipient_code = Column(String(100), index=True)
    payouts_enabled = Column(Boolean, default=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
