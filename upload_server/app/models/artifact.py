from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """Metadata record of a stored upload."""
    model_config = ConfigDict(frozen=True)

    id: str
    content_type: str = "application/octet-stream"
    size: int = Field(gt=0)
    sha256: str
    created_at: datetime
    display_name: str
    delete_token_hash: str


class UploadOptions(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    use_original_filename: bool = Field(default=False, alias="useOriginalFilename")
    redirect: bool = False


class UploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    delete_token: str = Field(alias="deleteToken")
    thumbnail_url: Optional[str] = Field(default=None, alias="thumbnailUrl")


class RecentEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    thumbnail_url: Optional[str] = Field(default=None, alias="thumbnailUrl")
    created_at: datetime = Field(alias="createdAt")
    size: int
    content_type: str = Field(alias="contentType")
    name: str
