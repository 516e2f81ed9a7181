"""Schemas for club-wide key/value settings."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SettingType(str, Enum):
	TEXT = "text"
	BOOLEAN = "boolean"
	INTEGER = "integer"


class SettingKey(str, Enum):
	WAITLIST_OPEN = "waitlist_open"
	MEMBERSHIP_MONTHLY_FEE = "membership_monthly_fee"
	MEMBERSHIP_ANNUAL_FEE = "membership_annual_fee"
	INSURANCE_FORM_LINK = "insurance_form_link"


class ClubSetting(BaseModel):
	key: str
	value: str
	type: SettingType
	description: Optional[str] = None
	updated_at: datetime
	updated_by: Optional[UUID] = None

	model_config = ConfigDict(from_attributes=True)

	def parsed(self) -> Union[str, int, bool]:
		if self.type is SettingType.BOOLEAN:
			return self.value.strip().lower() == "true"
		if self.type is SettingType.INTEGER:
			return int(self.value)
		return self.value


class SettingUpdateRequest(BaseModel):
	value: Union[bool, int, str]
