from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from palletflow.models import (
    ManifestStatus,
    ManifestType,
    PalletStatus,
    ReceivingOrderStatus,
    ShipmentType,
    ShippingOrderStatus,
    WriteOffReason,
)


class OrderLineIn(BaseModel):
    item_id: str
    qty: int


class ReceivingOrderCreate(BaseModel):
    container_num: str
    seal_num: str
    lines: list[OrderLineIn]


class ReceivingOrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    container_num: str
    seal_num: str
    status: ReceivingOrderStatus
    created_by: str
    signed_form_ref: str | None = None
    created_at: datetime
    updated_at: datetime


class ConfirmPalletIn(BaseModel):
    actual_qty: int
    expected_confirmed_count: int | None = None


class UndoPalletIn(BaseModel):
    expected_confirmed_count: int | None = None


class ShipNowIn(BaseModel):
    tallied_qty: int


class FinishTallyIn(BaseModel):
    terminal_status: ReceivingOrderStatus | None = None


class DocumentIn(BaseModel):
    signed_form_ref: str | None = None


class PalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    item_id: str
    qty: int
    status: PalletStatus
    receiving_order_id: int | None = None
    shipping_order_id: int | None = None
    location_id: str | None = None
    manifest_id: int | None = None
    is_cross_dock: bool
    created_at: datetime
    received_at: datetime | None = None
    shipped_at: datetime | None = None


class ShipNowOut(BaseModel):
    pallet: PalletOut
    shipping_order_id: int
    order_ref: str
    allocated_qty: int
    excess_qty: int


class TallyRowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_id: int
    item_id: str
    description: str
    expected_qty: int
    units_per_pallet: int
    expected_pallets: int
    confirmed_pallet_ids: list[int]
    confirmed_qty: int
    cross_dock_qty: int
    open_qty: int


class DiscrepancyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: str
    expected_qty: int
    received_qty: int
    difference: int


class LocationIn(BaseModel):
    location_id: str


class PlacementOut(BaseModel):
    pallet: PalletOut
    location_id: str
    other_pallets_at_location: list[int]


class WriteOffIn(BaseModel):
    reason: WriteOffReason


class ShippingOrderCreate(BaseModel):
    order_ref: str
    shipment_type: ShipmentType
    seal_num: str | None = None
    lines: list[OrderLineIn]


class ShippingOrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_ref: str
    shipment_type: ShipmentType
    seal_num: str | None = None
    status: ShippingOrderStatus
    manifest_id: int | None = None
    created_at: datetime
    shipped_at: datetime | None = None


class ShippingOrderDetailOut(ShippingOrderOut):
    remaining_by_item: dict[str, int]
    loaded_items: list[dict]


class PickIn(BaseModel):
    pallet_ids: list[int] = Field(min_length=1)


class LoadTargetIn(BaseModel):
    manifest_id: int | None = None


class LoadPalletIn(BaseModel):
    pallet_id: int
    checked: bool = True


class CloseManifestIn(BaseModel):
    signed_form_ref: str | None = None
    photo_refs: list[str] = Field(default_factory=list)


class ContainerManifestCreate(BaseModel):
    container_num: str
    seal_num: str


class ManifestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: ManifestType
    container_num: str | None = None
    seal_num: str
    status: ManifestStatus
    signed_form_ref: str | None = None
    created_at: datetime
    closed_at: datetime | None = None


class BillingMetricsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    storage_pallet_positions: int
    in_pallet_positions_standard: int
    cross_dock_pallet_positions: int
    out_pallet_positions_standard: int
    hand_delivery_pallet_positions: int


class HandDeliveryRowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    delivery_date: date
    order_ref: str
    total_pallet_positions: int
    notes: str


class BillingReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_date: date
    to_date: date
    metrics: BillingMetricsOut
    hand_delivery_rows: list[HandDeliveryRowOut]


class BillingExportIn(BaseModel):
    from_date: date
    to_date: date
    notes: dict[str, str] = Field(default_factory=dict)


class ProductIn(BaseModel):
    item_id: str
    units_per_pallet: int
    description: str = ''
    pallet_positions: int | None = None
    active: bool = True


class CatalogIn(BaseModel):
    products: list[ProductIn]
