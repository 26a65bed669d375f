# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API. Document
# uploads for POST /experts are multipart form data and have no body
# model; see api/experts.py.
#
# Images attached to a question travel as base64 strings so a chat turn
# stays a single JSON body.
# =============================================================================

import base64
import binascii

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from research_swarm.models.schemas import ChatTurn, ClarificationRequest
from research_swarm.services.llm import Attachment


class ImagePayload(BaseModel):
    """An image attached to the user's message."""

    data: str = Field(description="Base64-encoded image bytes")
    mime_type: str = Field(default="image/png", examples=["image/png", "image/jpeg"])
    name: str = ""

    @field_validator("data")
    @classmethod
    def _valid_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("data must be valid base64") from e
        return value

    def to_attachment(self) -> Attachment:
        return Attachment(
            data=base64.b64decode(self.data),
            mime_type=self.mime_type,
            name=self.name,
        )


class AskRequest(BaseModel):
    """
    Request body for POST /ask — one user turn for the research team.

    Example:
        {
            "query": "Compare revenue growth between the two reports",
            "active_experts": ["10-K-2023.pdf", "10-K-2024.pdf"],
            "history": [{"role": "user", "text": "Hi"}]
        }
    """

    query: str = Field(
        default="",
        max_length=20000,
        description="The user's message. May be empty when URLs are given.",
        examples=["Compare revenue growth between the two reports"],
    )

    # Subset of registered experts this turn may use. Unknown names are
    # ignored; empty or omitted means every registered expert.
    active_experts: list[str] | None = Field(
        default=None,
        description="Experts to involve. Defaults to all registered experts.",
    )

    history: list[ChatTurn] = Field(
        default_factory=list,
        description="Prior chat turns, oldest first.",
    )

    urls: list[str] = Field(
        default_factory=list,
        description="URLs for the URL Expert to target in this turn.",
    )

    images: list[ImagePayload] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "query": "Compare revenue growth between the two reports",
                    "active_experts": ["10-K-2023.pdf", "10-K-2024.pdf"],
                },
                {
                    "query": "",
                    "urls": ["https://example.com/investor-relations/q3"],
                },
            ]
        }
    )

    @model_validator(mode="after")
    def _query_or_input(self) -> "AskRequest":
        if not self.query.strip() and not self.urls and not self.images:
            raise ValueError("Provide a query, URLs or images")
        return self


class ClarifyRequest(BaseModel):
    """
    Request body for POST /ask/clarify — answers to clarification questions.

    `query` is the query returned with the clarification outcome;
    `answers` maps question ids to the selected option ids.
    """

    query: str = Field(..., min_length=1)
    clarification: ClarificationRequest
    answers: dict[str, list[str]] = Field(default_factory=dict)
    custom_inputs: dict[str, str] = Field(
        default_factory=dict,
        description="Question id → text typed into a custom-input option",
    )
    active_experts: list[str] | None = None
    history: list[ChatTurn] = Field(default_factory=list)
    images: list[ImagePayload] = Field(default_factory=list)
