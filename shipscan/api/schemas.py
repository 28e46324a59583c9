"""Request schemas and the response envelope for the HTTP API."""

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import Field

from shipscan.records.models import CamelModel, InvoiceType


def envelope(status_code: int, message: str, **data: Any) -> JSONResponse:
    """Build a ``{statusCode, isSuccess, message, ...data}`` response."""
    body = {
        "statusCode": status_code,
        "isSuccess": 200 <= status_code < 300,
        "message": message,
    }
    body.update(jsonable_encoder(data))
    return JSONResponse(status_code=status_code, content=body)


class ClientCreate(CamelModel):
    name: str = Field(min_length=1, max_length=200)


class ClientRename(CamelModel):
    name: str = Field(min_length=1, max_length=200)


class ProcessRequest(CamelModel):
    """Extracted fields to assemble and save as a record."""

    fields: dict[str, Any]
    image_url: str = "UNKNOWN"
    image_urls: list[str] = Field(default_factory=list)
    client_name: str = "default-client"
    invoice_type: InvoiceType = InvoiceType.INDIVIDUAL
