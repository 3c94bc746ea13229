from pydantic import BaseModel, Field
from typing import List


class ImportInput(BaseModel):
    type: str = Field(..., description="FHIR resource type contained in the file")
    url: str = Field(..., description="Location of the NDJSON file")


class StorageDetail(BaseModel):
    type: str = "https"

    model_config = {"extra": "allow"}


class ImportKickOffRequest(BaseModel):
    inputFormat: str
    inputSource: str
    storageDetail: StorageDetail = Field(default_factory=StorageDetail)
    input: List[ImportInput]
