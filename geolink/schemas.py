from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional
from datetime import datetime

SHORT_CODE_PATTERN = "^[a-zA-Z0-9_-]+$"

def _normalize_countries(countries: list[str]) -> list[str]:
    normalized = []
    for code in countries:
        code = code.strip().upper()
        if len(code) != 2 or not code.isascii() or not code.isalpha():
            raise ValueError(f"'{code}' is not a two-letter country code")
        if code not in normalized:
            normalized.append(code)
    return normalized

class RuleCreate(BaseModel):
    redirect_url: str = Field(..., min_length=1, max_length=2048)
    countries: list[str] = Field(..., min_length=1)

    @field_validator("countries")
    @classmethod
    def check_countries(cls, v: list[str]) -> list[str]:
        return _normalize_countries(v)

class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    link_id: int
    redirect_url: str
    countries: list[str]
    created_at: datetime
    updated_at: datetime

class LinkCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    base_url: str = Field(..., min_length=1, max_length=2048)
    short_code: Optional[str] = Field(None, min_length=3, max_length=32, pattern=SHORT_CODE_PATTERN)
    rules: list[RuleCreate] = Field(default_factory=list)

class LinkUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    base_url: Optional[str] = Field(None, min_length=1, max_length=2048)
    active: Optional[bool] = None

class LinkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    short_code: str
    short_url: str = ""
    base_url: str
    active: bool
    project_id: int
    rules: list[RuleResponse]
    created_at: datetime
    updated_at: datetime

class LinkPage(BaseModel):
    links: list[LinkResponse]
    page: int
    total_pages: int

class ShortCodeAvailability(BaseModel):
    short_code: str
    available: bool

# Redirect-path snapshots. These are what the link cache stores and what
# the link store hands to the redirector, so cached and uncached lookups
# look the same to the caller.

class RuleSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    redirect_url: str
    countries: list[str]

class LinkSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    short_code: str
    base_url: str
    active: bool
    rules: list[RuleSnapshot] = Field(default_factory=list)
