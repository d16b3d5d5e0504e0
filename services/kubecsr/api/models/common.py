"""Common Pydantic models used across the API."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class KubeCSRBaseModel(BaseModel):
    """Base model with common configuration.

    Wire names are camelCase; Python attributes stay snake_case.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorResponse(KubeCSRBaseModel):
    """Error body returned for every 4xx/5xx response."""

    error: str = Field(description="Human-readable error message")
