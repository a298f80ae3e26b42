from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    address: str
    message: str
    signature: str


class RegisterPublicKeyRequest(BaseModel):
    address: str
    public_key: str
    message: str
    signature: str


class CreateContentRequest(BaseModel):
    title: str = Field(..., max_length=100)
    encrypted_data: str
    encrypted_key: str
    iv: str


class DecryptContentRequest(BaseModel):
    content_id: int
    message: str
    nonce: str
    signature: str
