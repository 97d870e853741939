from pydantic import BaseModel


class MessageResponse(BaseModel):
    """Simple message response."""
    message: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str
