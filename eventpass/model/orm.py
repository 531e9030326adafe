from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    Numeric,
    String,
    Float,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# External records (read-only to the ticket desk)
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)


class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)  # major units
    registration_deadline = Column(Float, nullable=False)
    organizer_id = Column(String, nullable=False)


# ----------------------------
# Ledger tables
# ----------------------------
class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False, index=True)
    organizer_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False)
    gateway_order_id = Column(String, nullable=False, unique=True)
    gateway_payment_id = Column(String, nullable=True)

    # created | paid | failed
    status = Column(String, nullable=False, default="created")
    failure_reason = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, index=True)
    finalized_at = Column(Float, nullable=True)


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        # at most one registration per (user, event)
        UniqueConstraint("user_id", "event_id", name="uq_registration_pair"),
    )
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    payment_id = Column(String, nullable=False)

    # pending | paid | checked_in
    status = Column(String, nullable=False, default="paid")
    credential_token = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
