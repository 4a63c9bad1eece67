from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ManifestProxyParams(GenericParams):
    destination: str = Field(
        ..., description="Absolute upstream URL (percent-encoded or base64).", alias="u"
    )
    cookie: Optional[str] = Field(None, description="Raw cookie string to forward upstream.", alias="c")


class PlayParams(GenericParams):
    resolution: Optional[str] = Field(None, description="Preferred resolution, e.g. 1080.")
    audio: Optional[str] = Field(None, description="Preferred audio language, e.g. jpn or eng.")
    list_only: bool = Field(
        False, description="Only list the mirror buttons, skip playlist extraction.", alias="listOnly"
    )
    strict: bool = Field(False, description="Fail with 422 instead of ignoring filters that match nothing.")
    debug: bool = Field(False, description="Include script snippets and candidate samples in diagnostics.")
