"""Request bodies accepted by the API.

Responses are plain dicts built by the ``serialize_*`` helpers of each
service module.
"""
import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class Profile(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[dt.date] = None
    address: Optional[str] = None
    address_number: Optional[str] = None
    address_complement: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


# Auth

class RegisterRequest(Profile):
    name: str
    national_id: str = Field(..., description="CPF, with or without punctuation")
    password: str
    visitor_id: Optional[str] = Field(None, description="Affiliate visitor identifier, if any")


class LoginRequest(BaseModel):
    national_id: str
    password: str


class SelectRoleRequest(BaseModel):
    login_ticket: str
    role: str


class SwitchRoleRequest(BaseModel):
    role: str


# Users

class UserCreate(Profile):
    name: str
    national_id: str
    roles: List[str]
    password: Optional[str] = None
    category_id: Optional[int] = None
    percentage: Optional[int] = Field(None, ge=0, le=100)
    crm: Optional[str] = None


class UserUpdate(Profile):
    roles: Optional[List[str]] = None
    category_id: Optional[int] = None
    percentage: Optional[int] = Field(None, ge=0, le=100)
    crm: Optional[str] = None


class RolesUpdate(BaseModel):
    roles: List[str]


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class ActivateRequest(BaseModel):
    expiry: Optional[dt.datetime] = None


# Catalog

class CategoryCreate(BaseModel):
    name: str
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class ServiceCreate(BaseModel):
    name: str
    base_price: Decimal
    category_id: Optional[int] = None
    description: Optional[str] = None
    is_base_service: bool = False


class ServiceUpdate(BaseModel):
    name: Optional[str] = None
    base_price: Optional[Decimal] = None
    category_id: Optional[int] = None
    description: Optional[str] = None
    is_base_service: Optional[bool] = None


# Patients

class DependentCreate(BaseModel):
    name: str
    national_id: str
    birth_date: Optional[dt.date] = None
    client_id: Optional[int] = Field(None, description="Required when an admin creates the dependent")


class DependentUpdate(BaseModel):
    name: Optional[str] = None
    birth_date: Optional[dt.date] = None


class PrivatePatientCreate(Profile):
    name: str
    national_id: Optional[str] = None


class PrivatePatientUpdate(Profile):
    national_id: Optional[str] = None


class LocationCreate(BaseModel):
    name: str
    address: Optional[str] = None
    address_number: Optional[str] = None
    address_complement: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    is_default: bool = False


class LocationUpdate(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    address_number: Optional[str] = None
    address_complement: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    is_default: Optional[bool] = None


# Consultations

class PatientFields(BaseModel):
    client_id: Optional[int] = None
    dependent_id: Optional[int] = None
    private_patient_id: Optional[int] = None


class ConsultationCreate(PatientFields):
    professional_id: Optional[int] = Field(None, description="Admins book on behalf of a professional")
    service_id: int
    location_id: Optional[int] = None
    value: Decimal
    date: dt.datetime
    notes: Optional[str] = None
    status: str = "completed"
    create_appointment: bool = False


class RecurringConsultationCreate(PatientFields):
    professional_id: Optional[int] = None
    service_id: int
    location_id: Optional[int] = None
    value: Decimal
    start_date: dt.date
    start_time: dt.time
    recurrence_type: str = Field(..., description="daily | weekly | monthly")
    interval: int = 1
    occurrences: Optional[int] = None
    end_date: Optional[dt.date] = None
    notes: Optional[str] = None
    timezone_offset: Optional[int] = Field(None, description="Minutes to add to local time to get UTC")


class ConsultationUpdate(BaseModel):
    notes: Optional[str] = None
    location_id: Optional[int] = None


class StatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    date: dt.datetime


# Appointments

class AppointmentCreate(PatientFields):
    professional_id: Optional[int] = None
    service_id: Optional[int] = None
    location_id: Optional[int] = None
    date: dt.date
    time: dt.time
    notes: Optional[str] = None


class AppointmentUpdate(BaseModel):
    date: Optional[dt.date] = None
    time: Optional[dt.time] = None
    service_id: Optional[int] = None
    location_id: Optional[int] = None
    notes: Optional[str] = None
    status: Optional[str] = None


# Medical

class MedicalRecordFields(BaseModel):
    chief_complaint: Optional[str] = None
    history_present_illness: Optional[str] = None
    past_medical_history: Optional[str] = None
    medications: Optional[str] = None
    allergies: Optional[str] = None
    physical_examination: Optional[str] = None
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    notes: Optional[str] = None
    vital_signs: Optional[Dict[str, Any]] = None


class MedicalRecordCreate(MedicalRecordFields):
    private_patient_id: int


class GenerateDocumentRequest(BaseModel):
    template_inputs: Optional[Dict[str, Any]] = None


class MedicalDocumentCreate(BaseModel):
    document_type: str
    title: str
    private_patient_id: Optional[int] = None
    patient_name: Optional[str] = None
    template_data: Optional[Dict[str, Any]] = None


# Affiliates

class TrackRequest(BaseModel):
    referral_code: str
    visitor_id: str
    user_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class LinkUserRequest(BaseModel):
    visitor_id: str


class ConvertRequest(BaseModel):
    user_id: int


class AffiliateUpdate(BaseModel):
    commission_amount: Optional[Decimal] = Field(None, description="Valor pago por cliente convertido")
    pix_key: Optional[str] = None


# Payments and scheduling access

class SubscriptionPaymentRequest(BaseModel):
    coupon_code: Optional[str] = None


class ProfessionalPaymentRequest(BaseModel):
    amount: Decimal


class GrantAccessRequest(BaseModel):
    professional_id: int
    expires_at: dt.datetime
    reason: Optional[str] = None


class RevokeAccessRequest(BaseModel):
    professional_id: int


# Coupons

class CouponCreate(BaseModel):
    code: str
    coupon_type: str = Field("titular", description="titular (assinatura) ou dependente")
    discount_value: Decimal
    valid_from: Optional[dt.date] = None
    valid_until: Optional[dt.date] = None
    description: Optional[str] = None
    unlimited_use: bool = True
    is_active: bool = True


class CouponUpdate(BaseModel):
    code: Optional[str] = None
    coupon_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    valid_from: Optional[dt.date] = None
    valid_until: Optional[dt.date] = None
    description: Optional[str] = None
    unlimited_use: Optional[bool] = None
    is_active: Optional[bool] = None
