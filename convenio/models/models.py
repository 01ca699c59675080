from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Time, ForeignKey, Text, Boolean,
    Numeric, JSON, CheckConstraint, Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from convenio.core.database import Base, utc_now

# JSON everywhere, JSONB on Postgres (GIN-indexable)
JSONType = JSON().with_variant(JSONB(), "postgresql")

ROLES = ("admin", "professional", "client", "vendedor")
SUBSCRIPTION_STATUSES = ("pending", "active", "expired")
CONSULTATION_STATUSES = ("scheduled", "confirmed", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed")

PATIENT_XOR = (
    "(CASE WHEN client_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN dependent_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN private_patient_id IS NOT NULL THEN 1 ELSE 0 END) = 1"
)


class ServiceCategory(Base):
    __tablename__ = "service_categories"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)  # unique index created by init_db
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    national_id = Column(String(11), nullable=False, index=True)  # CPF, digits only
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    birth_date = Column(Date, nullable=True)
    address = Column(String, nullable=True)
    address_number = Column(String, nullable=True)
    address_complement = Column(String, nullable=True)
    neighborhood = Column(String, nullable=True)
    city = Column(String, nullable=True, index=True)
    state = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    roles = Column(JSONType, nullable=False, default=list)

    # Client
    subscription_status = Column(String, default="pending")  # pending, active, expired
    subscription_expiry = Column(DateTime, nullable=True)

    # Professional
    category_id = Column(Integer, ForeignKey("service_categories.id"), nullable=True)
    percentage = Column(Integer, nullable=True)
    crm = Column(String, nullable=True)
    photo_url = Column(String, nullable=True)
    signature_url = Column(String, nullable=True)

    # Affiliate attribution
    referred_by_affiliate_id = Column(Integer, nullable=True)
    affiliate_referral_id = Column(Integer, nullable=True)

    # Affiliate (vendedor)
    commission_amount = Column(Numeric(10, 2), nullable=True)
    pix_key = Column(String, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def has_role(self, role: str) -> bool:
        return role in (self.roles or [])


class Service(Base):
    __tablename__ = "services"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    base_price = Column(Numeric(10, 2), nullable=False)
    category_id = Column(Integer, ForeignKey("service_categories.id"), nullable=True, index=True)
    is_base_service = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utc_now)


class Dependent(Base):
    __tablename__ = "dependents"
    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    national_id = Column(String(11), nullable=False, index=True)
    birth_date = Column(Date, nullable=True)
    subscription_status = Column(String, default="pending")
    subscription_expiry = Column(DateTime, nullable=True)
    billing_amount = Column(Numeric(10, 2), default=50)
    payment_reference = Column(String, nullable=True)  # gateway payment id
    activated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class PrivatePatient(Base):
    __tablename__ = "private_patients"
    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    national_id = Column(String(11), nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    birth_date = Column(Date, nullable=True)
    address = Column(String, nullable=True)
    address_number = Column(String, nullable=True)
    address_complement = Column(String, nullable=True)
    neighborhood = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class AttendanceLocation(Base):
    __tablename__ = "attendance_locations"
    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=True)
    address_number = Column(String, nullable=True)
    address_complement = Column(String, nullable=True)
    neighborhood = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utc_now)


class Consultation(Base):
    __tablename__ = "consultations"
    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    dependent_id = Column(Integer, ForeignKey("dependents.id"), nullable=True)
    private_patient_id = Column(Integer, ForeignKey("private_patients.id"), nullable=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    location_id = Column(Integer, ForeignKey("attendance_locations.id"), nullable=True)
    value = Column(Numeric(10, 2), nullable=False)
    date = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default="completed")
    notes = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint(PATIENT_XOR, name="ck_consultations_patient_xor"),
        Index("idx_consultations_professional_date", "professional_id", "date"),
    )


class Appointment(Base):
    __tablename__ = "appointments"
    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    dependent_id = Column(Integer, ForeignKey("dependents.id"), nullable=True)
    private_patient_id = Column(Integer, ForeignKey("private_patients.id"), nullable=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=True)
    location_id = Column(Integer, ForeignKey("attendance_locations.id"), nullable=True)
    consultation_id = Column(Integer, ForeignKey("consultations.id"), nullable=True)
    date = Column(Date, nullable=False)
    time = Column(Time, nullable=False)
    status = Column(String, nullable=False, default="scheduled")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint(PATIENT_XOR, name="ck_appointments_patient_xor"),
        Index("idx_appointments_professional_date", "professional_id", "date"),
    )


class MedicalRecord(Base):
    __tablename__ = "medical_records"
    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    private_patient_id = Column(Integer, ForeignKey("private_patients.id"), nullable=False, index=True)
    chief_complaint = Column(Text, nullable=True)
    history_present_illness = Column(Text, nullable=True)
    past_medical_history = Column(Text, nullable=True)
    medications = Column(Text, nullable=True)
    allergies = Column(Text, nullable=True)
    physical_examination = Column(Text, nullable=True)
    diagnosis = Column(Text, nullable=True)
    treatment_plan = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    vital_signs = Column(JSONType, nullable=True)  # {"blood_pressure": "12x8", "heart_rate": 72, ...}
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class MedicalDocument(Base):
    __tablename__ = "medical_documents"
    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    private_patient_id = Column(Integer, nullable=True)
    medical_record_id = Column(Integer, nullable=True)  # survives record deletion
    patient_name = Column(String, nullable=True)
    title = Column(String, nullable=False)
    document_type = Column(String, nullable=False)
    document_url = Column(String, nullable=False)
    template_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=utc_now)


class AffiliateReferral(Base):
    __tablename__ = "affiliate_referrals"
    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    visitor_identifier = Column(String, nullable=False, index=True)
    referral_code = Column(String, nullable=False)
    referral_metadata = Column("metadata", JSONType, nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    converted = Column(Boolean, default=False)
    converted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_affiliate_referrals_affiliate_created", "affiliate_id", "created_at"),
    )


class PaymentMixin:
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, paid, failed
    payment_method = Column(String, default="mercadopago")
    external_reference = Column(String, nullable=True, index=True)
    gateway_preference_id = Column(String, nullable=True)
    gateway_payment_id = Column(String, nullable=True, index=True)  # unique when set, see init_db
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)


class ClientPayment(PaymentMixin, Base):
    __tablename__ = "client_payments"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)


class DependentPayment(PaymentMixin, Base):
    __tablename__ = "dependent_payments"
    id = Column(Integer, primary_key=True, index=True)
    dependent_id = Column(Integer, ForeignKey("dependents.id"), nullable=False, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)


class ProfessionalPayment(PaymentMixin, Base):
    __tablename__ = "professional_payments"
    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)


class AgendaPayment(PaymentMixin, Base):
    __tablename__ = "agenda_payments"
    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    duration_days = Column(Integer, nullable=False, default=30)


class SchedulingAccess(Base):
    __tablename__ = "scheduling_access"
    id = Column(Integer, primary_key=True, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    granted_by = Column(Integer, ForeignKey("users.id"), nullable=True)  # null when bought
    starts_at = Column(DateTime, default=utc_now)
    expires_at = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utc_now)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String, default="info")
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utc_now)


class AffiliateCommission(Base):
    __tablename__ = "affiliate_commissions"
    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    referral_id = Column(Integer, ForeignKey("affiliate_referrals.id"), nullable=False)  # unique index created by init_db
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, paid
    payment_reference = Column(String, nullable=True)  # gateway payment that converted the client
    paid_at = Column(DateTime, nullable=True)
    paid_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    paid_method = Column(String, nullable=True)
    paid_receipt_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now)


class Coupon(Base):
    __tablename__ = "coupons"
    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, nullable=False)  # upper case, unique index created by init_db
    coupon_type = Column(String, nullable=False, default="titular")  # titular, dependente
    discount_value = Column(Numeric(10, 2), nullable=False)
    valid_from = Column(Date, nullable=True)
    valid_until = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    unlimited_use = Column(Boolean, default=True)  # otherwise once per user
    is_active = Column(Boolean, default=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utc_now)


class CouponUsage(Base):
    __tablename__ = "coupon_usages"
    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    payment_reference = Column(String, nullable=True)
    used_at = Column(DateTime, default=utc_now)
