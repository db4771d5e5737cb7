from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional

class PaymentActionRequest(BaseModel):
    """Body of a storefront call to ``/{gateway}-payment``"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    action: Optional[str] = None
    order_id: Optional[str] = Field(default=None, alias="orderId")
    provider_id: Optional[str] = None
    reference: Optional[str] = None

class PaymentInitResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool
    gatewayUrl: str
    reference: Optional[str] = None

class PaymentVerifyResponse(BaseModel):
    success: bool
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    data: Any = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str

class EncryptCredentialsRequest(BaseModel):
    credentials: Dict[str, Any]

class EncryptCredentialsResponse(BaseModel):
    success: bool
    encrypted: Dict[str, Any]

class DocumentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[str] = Field(default=None, alias="orderId")

class DocumentResponse(BaseModel):
    success: bool
    html: str
    order_number: str
