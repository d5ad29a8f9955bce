from typing import Literal, Union

from pydantic import BaseModel, Field

from erecht24_sync.models.legal_text import LegalTextType


class SyncRequest(BaseModel):
    type: Union[LegalTextType, Literal["all"]] = Field(
        description="Legal text to synchronise, or ``\"all\"`` for every type.",
    )


class PreviewRequest(BaseModel):
    type: LegalTextType
