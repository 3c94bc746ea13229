from pydantic import BaseModel, Field
from typing import List, Optional


class ManifestEntry(BaseModel):
    type: str
    url: str
    count: Optional[int] = None
    inputUrl: Optional[str] = None


class Manifest(BaseModel):
    transactionTime: str
    request: str
    requiresAccessToken: bool = False
    output: List[ManifestEntry] = Field(default_factory=list)
    error: List[ManifestEntry] = Field(default_factory=list)
