"""Pydantic models for the query endpoint."""

from pydantic import BaseModel, Field, StrictStr, field_validator


class QueryRequest(BaseModel):
    query: StrictStr = Field(description="Natural-language question to answer")

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must be a non-empty string")
        return value


class ErrorResponse(BaseModel):
    error: str
