"""
Models for messages streamed by the Docker daemon on build, push and pull.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ProgressDetail(BaseModel):
    current: int = 0
    total: int = 0


class ErrorDetail(BaseModel):
    code: int = 0
    message: str = ""


class ResponseAux(BaseModel):
    """
    Auxiliary payload: an image id after a build, or a tag/digest/size triple after a push.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default="", alias="ID")
    tag: str = Field(default="", alias="Tag")
    digest: str = Field(default="", alias="Digest")
    size: int = Field(default=0, alias="Size")

    def is_empty(self) -> bool:
        return not (self.id or self.tag or self.digest)


class ResponseMessage(BaseModel):
    """
    One normalized daemon message. Exactly one of status, stream, aux or error
    carries meaning; consumers branch on whichever is non-empty.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    status: str = ""
    stream: str = ""
    progress: str = ""
    progress_detail: Optional[ProgressDetail] = Field(default=None, alias="progressDetail")
    error: str = ""
    error_detail: Optional[ErrorDetail] = Field(default=None, alias="errorDetail")
    aux: Optional[ResponseAux] = None

    def error_message(self) -> str:
        if self.error:
            return self.error
        if self.error_detail and self.error_detail.message:
            return self.error_detail.message
        return ""

    def summary(self) -> str:
        """
        Human readable rendering of the message, as echoed by listeners.
        """
        if self.status:
            line = f"{self.id}: {self.status}" if self.id else self.status
            if self.progress_detail and self.progress_detail.total:
                line += f" {self.progress_detail.current} of {self.progress_detail.total}"
            line += "\n"
            if self.progress:
                line += self.progress + "\n"
            return line
        if self.stream:
            return self.stream
        if self.aux is not None and self.aux.digest:
            return self.aux.digest + "\n"
        return ""


class TagDigest(BaseModel):
    tag: str
    digest: str
    size: int = 0
