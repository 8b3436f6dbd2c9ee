"""
Payment Provider Configuration Models
One row per organizer + provider pair
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class PaymentProviderConfig(BaseModel):
    """Provider configuration in database"""
    id: str
    organizer_id: str
    provider_id: str        # ecpay, stripe, etc.
    provider_name: str      # Display name

    # Encrypted credential blob, never plaintext
    credentials: str

    # Provider-specific settings
    configuration: Dict[str, Any] = Field(default_factory=dict)

    # Status
    is_active: bool = True
    is_default: bool = False

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CreateProviderRequest(BaseModel):
    """Request to onboard a provider for an organizer"""
    provider_id: str = Field(..., min_length=1)
    provider_name: str = Field(..., min_length=1)
    credentials: Dict[str, Any]
    configuration: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    is_default: bool = False


class UpdateProviderRequest(BaseModel):
    """Request to update (or rotate credentials of) a provider"""
    provider_name: Optional[str] = None
    credentials: Optional[Dict[str, Any]] = None
    configuration: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None


class ProviderConfigResponse(BaseModel):
    """Provider configuration response (credentials omitted)"""
    id: str
    provider_id: str
    provider_name: str
    configuration: Dict[str, Any]
    is_active: bool
    is_default: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_config(cls, config: PaymentProviderConfig) -> "ProviderConfigResponse":
        return cls(**config.model_dump(exclude={"credentials", "organizer_id"}))
