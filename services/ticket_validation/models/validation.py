"""Modelos Pydantic para validación de tickets"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List


class BiometricData(BaseModel):
    type: str  # face, fingerprint, voice, iris
    template: str


class TicketValidationRequest(BaseModel):
    qr_token: str
    ble_session_token: Optional[str] = None
    device_id: Optional[str] = None
    beacon_id: Optional[str] = None
    biometric_data: Optional[BiometricData] = None
    location: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None


class TicketValidationResponse(BaseModel):
    valid: bool
    code: str
    message: str
    ticket: Optional[Dict[str, Any]] = None
    validation: Optional[Dict[str, Any]] = None
    expired_at: Optional[str] = None
    used_at: Optional[str] = None
    festival_start: Optional[str] = None
    festival_end: Optional[str] = None
    ble_error: Optional[str] = None
    biometric_error: Optional[str] = None
    confidence_score: Optional[float] = None


class IssueCredentialRequest(BaseModel):
    rotating: bool = False


class CredentialResponse(BaseModel):
    ticket_id: str
    qr_token: str
    issued_at: str
    expires_at: str


class TransferTicketRequest(BaseModel):
    new_user_id: str
    holder_name: str = Field(..., min_length=1)


class CancelTicketRequest(BaseModel):
    reason: Optional[str] = None


class ValidationRequirementsResponse(BaseModel):
    ticket_id: str
    status: str
    ble_required: bool
    biometric_required: bool
    valid_from: str
    valid_to: str
    festival: Dict[str, Any]


class ValidationHistoryResponse(BaseModel):
    ticket_id: str
    validations: List[Dict[str, Any]]
