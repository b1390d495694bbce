from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models import ItemStatus, ItemType


class WireModel(BaseModel):
    """Base for records that travel as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore', frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


class AuditLogEntry(WireModel):
    id: str
    timestamp: str
    user: str
    action: str
    # field name -> {'from': ..., 'to': ...}
    changes: dict[str, dict[str, Any]] = Field(default_factory=dict)


class Item(WireModel):
    id: str
    sheet_name: str
    assembly: str = '-'
    part_number: str = '-'
    description: str
    quantity: int = Field(default=0, ge=0)
    unit: str = 'UN'
    type: ItemType = ItemType.COMMERCIAL
    supplier: str | None = None
    brand: str | None = None
    status: ItemStatus = ItemStatus.PENDING
    order_number: str | None = None
    expected_arrival: str | None = None
    invoice_number: str | None = None
    actual_arrival_date: str | None = None
    history: list[AuditLogEntry] | None = None


class Sheet(WireModel):
    id: str
    name: str
    items: list[Item] = Field(default_factory=list)
    created_date: str = ''


class ManualRequest(WireModel):
    id: str
    project: str
    code: str = ''
    description: str
    quantity: int = Field(default=0, ge=0)
    brand: str = ''
    type: ItemType = ItemType.COMMERCIAL
    timestamp: str = ''
    status: ItemStatus = ItemStatus.PENDING
    order_number: str | None = None
    expected_arrival: str | None = None
    invoice_number: str | None = None
    actual_arrival_date: str | None = None


class Dataset(WireModel):
    sheets: list[Sheet] = Field(default_factory=list)
    manual_requests: list[ManualRequest] = Field(default_factory=list)


class ManualRequestDraft(WireModel):
    project: str
    code: str = ''
    description: str
    quantity: int = Field(default=0, ge=0)
    brand: str = ''
    type: ItemType = ItemType.COMMERCIAL


class NormalizedSheet(WireModel):
    name: str
    items: list[Item] = Field(default_factory=list)


class NormalizedSheetData(WireModel):
    """Output of the external spreadsheet normalizer."""

    file_name: str
    sheets: list[NormalizedSheet] = Field(default_factory=list)


class LoginPayload(WireModel):
    secret: str
    display_name: str | None = None


class RenamePayload(WireModel):
    name: str


class StatusPayload(WireModel):
    status: ItemStatus


class OrderInfoPayload(WireModel):
    assembly: str | None = None
    part_number: str | None = None
    code: str | None = None
    description: str | None = None
    quantity: int | None = None
    unit: str | None = None
    type: ItemType | None = None
    supplier: str | None = None
    brand: str | None = None
    order_number: str | None = None
    expected_arrival: str | None = None
    invoice_number: str | None = None
    actual_arrival_date: str | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class BulkUpdatePayload(OrderInfoPayload):
    item_ids: list[str]
    status: ItemStatus | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={'item_ids'})


class AdminConfirmation(WireModel):
    admin_secret: str


class ImportPayload(AdminConfirmation):
    content: str
