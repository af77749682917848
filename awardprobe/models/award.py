"""Read-only views over award metadata from the spending registry.

Every field is optional; registry payloads are sparse and vary by award type.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _RegistryModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class Location(_RegistryModel):
    address_line1: str | None = None
    city_name: str | None = None
    state_code: str | None = None
    zip5: str | None = None
    country_name: str | None = None

    def format(self) -> str:
        parts = [self.address_line1, self.city_name, self.state_code, self.zip5, self.country_name]
        return ", ".join(p for p in parts if p)


class Recipient(_RegistryModel):
    recipient_name: str | None = None
    parent_recipient_name: str | None = None
    business_categories: list[str] = Field(default_factory=list)
    location: Location | None = None

    @field_validator("business_categories", mode="before")
    @classmethod
    def _null_categories(cls, value: Any) -> Any:
        return [] if value is None else value


class Officer(_RegistryModel):
    name: str | None = None
    amount: float | None = None


class ExecutiveDetails(_RegistryModel):
    officers: list[Officer] = Field(default_factory=list)

    @field_validator("officers", mode="before")
    @classmethod
    def _null_officers(cls, value: Any) -> Any:
        return [] if value is None else value


class NaicsCode(_RegistryModel):
    code: str | None = None
    description: str | None = None


class NaicsHierarchy(_RegistryModel):
    toptier_code: NaicsCode | None = None
    midtier_code: NaicsCode | None = None
    base_code: NaicsCode | None = None


class AwardDetails(_RegistryModel):
    total_obligation: float | None = None
    date_signed: str | None = None
    type_description: str | None = None
    description: str | None = None
    recipient: Recipient = Field(default_factory=Recipient)
    place_of_performance: Location | None = None
    naics_hierarchy: NaicsHierarchy | None = None
    executive_details: ExecutiveDetails | None = None
    latest_transaction_contract_data: dict[str, Any] | None = None

    @field_validator("recipient", mode="before")
    @classmethod
    def _null_recipient(cls, value: Any) -> Any:
        return {} if value is None else value


class Transaction(_RegistryModel):
    action_date: str | None = None
    federal_action_obligation: float | None = None
    description: str | None = None


class AwardMetadata(_RegistryModel):
    details: AwardDetails = Field(default_factory=AwardDetails)
    transactions: list[Transaction] = Field(default_factory=list)

    @field_validator("details", mode="before")
    @classmethod
    def _null_details(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("transactions", mode="before")
    @classmethod
    def _null_transactions(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def coerce(cls, value: "AwardMetadata | dict[str, Any] | None") -> "AwardMetadata | None":
        if value is None or isinstance(value, AwardMetadata):
            return value
        return cls.model_validate(value)
