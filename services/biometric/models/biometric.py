"""Modelos Pydantic para biometría"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List


class EnrollRequest(BaseModel):
    biometric_type: str
    template: str = Field(..., min_length=1)
    quality_score: float = Field(..., ge=0, le=1)
    metadata: Optional[Dict[str, Any]] = None


class EnrollResponse(BaseModel):
    success: bool
    biometric_id: str
    biometric_type: str
    quality_score: float
    enrolled_at: str
    message: str


class VerifyRequest(BaseModel):
    biometric_type: str
    template: str = Field(..., min_length=1)
    session_id: Optional[str] = None


class VerifyResponse(BaseModel):
    verified: bool
    confidence_score: float
    biometric_type: str
    message: str
    timestamp: str


class BiometricStatusResponse(BaseModel):
    enrolled: bool
    consent_at: Optional[str] = None
    consent_version: Optional[str] = None
    enrolled_types: List[Dict[str, Any]]


class SupportedType(BaseModel):
    type: str
    name: str
    description: str


class SupportedTypesResponse(BaseModel):
    supported_types: List[SupportedType]


class ConsentInfoResponse(BaseModel):
    version: str
    title: str
    description: str
    data_types: List[str]
    purposes: List[str]
    retention_period: str
    rights: List[str]
