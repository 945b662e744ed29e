import datetime as dt
import re
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Language = Literal['ru', 'az', 'en', 'mixed']
NonEmptyStr = Annotated[str, Field(min_length=1)]

UTC_TIMESTAMP = re.compile(r'^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$', re.ASCII)


class QuickResult(BaseModel):
    type: Literal['task', 'reminder', 'note']
    text: NonEmptyStr
    datetime: Optional[str]
    language: Language

    @field_validator('datetime')
    @classmethod
    def validate_utc_iso8601(cls, value: Optional[str]) -> Optional[str]:
        # Todoist gets this string verbatim as due_datetime, so only UTC "Z" timestamps pass
        if value is None:
            return value
        if not UTC_TIMESTAMP.fullmatch(value):
            raise ValueError('datetime must be an ISO 8601 UTC timestamp ending in Z')
        try:
            dt.datetime.fromisoformat(value[:-1] + '+00:00')
        except ValueError:
            raise ValueError(f'datetime is not valid ISO 8601: {value}')
        return value


class CompletionStatement(BaseModel):
    type: Literal['complete']
    text: NonEmptyStr


class TaskMatch(BaseModel):
    id: Optional[str]
    confidence: float = Field(ge=0, le=1)

    @field_validator('id', mode='before')
    @classmethod
    def coerce_numeric_id(cls, value):
        # Claude sometimes echoes Todoist ids back as numbers
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class LongResult(BaseModel):
    summary: NonEmptyStr
    tasks: List[NonEmptyStr]
    key_points: List[NonEmptyStr]
    language: Language
