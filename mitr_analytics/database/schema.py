from lancedb.pydantic import LanceModel
from datetime import datetime
from typing import List, Optional


class Conversation(LanceModel):
    id: str
    user_id: str
    title: str
    message_count: int
    created_at: datetime
    updated_at: datetime


class Message(LanceModel):
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime


class Scheme(LanceModel):
    id: str
    scheme_name: str
    ministry: str
    description: str
    category: str
    is_active: bool
    created_at: datetime


class ExtractionJob(LanceModel):
    id: str
    conversation_id: str
    user_id: str
    status: str
    priority: str
    message_count_at_extraction: int
    retry_count: int
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    next_attempt_at: Optional[datetime]


class UserAttribute(LanceModel):
    id: str
    user_id: str
    conversation_id: str
    location: Optional[str]
    industry: Optional[str]
    business_size: Optional[str]
    annual_turnover: Optional[float]
    employee_count: Optional[int]
    detected_languages: List[str]
    original_language_data_json: str
    extraction_confidence: float
    extraction_method: str
    extracted_from_message_id: Optional[str]
    extraction_notes: Optional[str]
    is_anonymized: bool
    anonymized_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class SchemeInterest(LanceModel):
    id: str
    user_id: str
    scheme_id: str
    conversation_id: Optional[str]
    interest_level: str
    extracted_from_message_id: Optional[str]
    mentioned_in_languages: List[str]
    first_mentioned_at: datetime
    last_mentioned_at: datetime
    mention_count: int
    is_anonymized: bool
    created_at: datetime
    updated_at: datetime
