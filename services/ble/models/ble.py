"""Modelos Pydantic para sesiones BLE"""
from pydantic import BaseModel, Field
from typing import Optional


class BeaconCreate(BaseModel):
    name: str
    location_name: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    mac_address: str
    uuid: str
    major: int = Field(..., ge=0, le=65535)
    minor: int = Field(..., ge=0, le=65535)
    tx_power: int = -59
    rssi_threshold: int = -70


class BeaconResponse(BaseModel):
    id: str
    festival_id: str
    name: str
    location_name: str
    latitude: float
    longitude: float
    mac_address: str
    uuid: str
    major: int
    minor: int
    tx_power: int
    rssi_threshold: int


class ProximityEvidence(BaseModel):
    rssi: Optional[int] = None
    distance: Optional[float] = None


class StartSessionRequest(BaseModel):
    beacon_id: str
    device_id: str
    proximity: Optional[ProximityEvidence] = None


class SessionResponse(BaseModel):
    session_token: str
    session_id: str
    beacon_id: str
    state: str
    expires_at: str


class ValidateSessionRequest(BaseModel):
    session_token: str
    proximity: Optional[ProximityEvidence] = None


class ProximityResultResponse(BaseModel):
    valid: bool
    code: str
    message: str
    session_id: Optional[str] = None
    beacon_id: Optional[str] = None
    device_id: Optional[str] = None
    state: Optional[str] = None
    expires_at: Optional[str] = None


class BeaconStatistics(BaseModel):
    total: int
    active: int
    inactive: int


class SessionStatistics(BaseModel):
    total: int
    pending: int
    validated: int
    expired: int
    cancelled: int


class BleStatisticsResponse(BaseModel):
    festival_id: str
    beacons: BeaconStatistics
    sessions: SessionStatistics


class CleanupRequest(BaseModel):
    user_id: Optional[str] = None


class CleanupResponse(BaseModel):
    expired_sessions: int
