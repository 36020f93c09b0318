from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ChatRequest(BaseModel):
    """Request payload for the chat API."""
    message: Optional[str] = Field(default=None)
    reset: Optional[bool] = Field(default=None)
    flow: Optional[str] = Field(default=None)


def parse_chat_request(raw_body: Union[bytes, str, None]) -> ChatRequest:
    """Decode a raw request body; anything unreadable becomes an empty request."""
    if not raw_body:
        return ChatRequest()
    try:
        return ChatRequest.model_validate_json(raw_body)
    except ValidationError:
        return ChatRequest()


class _EnvelopeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DraftOrderInfo(_EnvelopeModel):
    id: int
    admin_url: str = Field(alias="adminUrl")
    invoice_url: Optional[str] = Field(default=None, alias="invoiceUrl")


class ProductMatchInfo(_EnvelopeModel):
    id: int
    catalog_id: int = Field(alias="catalogId")
    name: str
    reason: str


class FlowStateInfo(_EnvelopeModel):
    """Summary of where the session stands after this turn."""
    step: str
    package_name: Optional[str] = Field(default=None, alias="packageName")
    variant_name: Optional[str] = Field(default=None, alias="variantName")
    has_package: bool = Field(alias="hasPackage")
    has_variant: bool = Field(alias="hasVariant")
    question_index: int = Field(alias="questionIndex")


class VariantInfo(_EnvelopeModel):
    id: int
    title: str
    price: str


class CurrentQuestionInfo(_EnvelopeModel):
    """The consultation question the engine expects an answer to next."""
    id: str
    question: str
    options: Optional[List[Any]] = None
    multiple: Union[bool, str] = True
    default_value: Optional[str] = Field(default=None, alias="defaultValue")


class ChatResponse(_EnvelopeModel):
    """Response envelope returned by the chat API."""
    reply: str
    draft_order: Optional[DraftOrderInfo] = Field(default=None, alias="draftOrder")
    product_matches: Optional[List[ProductMatchInfo]] = Field(default=None, alias="productMatches")
    flow_state: FlowStateInfo = Field(alias="flowState")
    variants: Optional[List[VariantInfo]] = None
    current_question: Optional[CurrentQuestionInfo] = Field(default=None, alias="currentQuestion")

    def to_json_dict(self) -> dict:
        data = self.model_dump(by_alias=True, exclude_none=True)
        # defaultValue is part of the question shape even when null.
        if self.current_question is not None:
            data["currentQuestion"]["defaultValue"] = self.current_question.default_value
        return data
