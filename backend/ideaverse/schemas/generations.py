"""Pydantic schemas for idea generation"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

DEFAULT_PROMPT = "A unique and innovative game concept"


class GameIdea(BaseModel):
    """Structured idea returned by the generation service"""
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    category: str = Field(min_length=1, max_length=100)
    genre: str = Field(min_length=1, max_length=100)
    viability: int = Field(ge=6, le=10)
    originality: int = Field(ge=6, le=10)
    market_appeal: int = Field(ge=6, le=10, alias="marketAppeal")


class GenerateRequest(BaseModel):
    prompt: Optional[str] = Field(default=None, max_length=2000)
