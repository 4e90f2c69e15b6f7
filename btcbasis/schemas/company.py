from pydantic import BaseModel, Field
from datetime import datetime


class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class CompanyRead(BaseModel):
    id: int
    name: str
    created_at: datetime

    class Config:
        from_attributes = True
