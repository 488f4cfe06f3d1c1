"""Pydantic schema for a transactional email."""

from pydantic import BaseModel, Field, field_validator


class TransactionalEmail(BaseModel):
    to: list[str]
    subject: str
    html_body: str
    text_body: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("to")
    @classmethod
    def _require_recipient(cls, value: list[str]) -> list[str]:
        recipients = [address.strip() for address in value if address and address.strip()]
        if not recipients:
            raise ValueError("at least one recipient is required")
        return recipients
