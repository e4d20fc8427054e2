from datetime import date
from typing import Optional, List, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import hhmm_to_minutes, to_int_or_none

PhaseName = Literal["Ascenso", "Descenso", "Desplazamiento", "Ascenso+Desp", "Descenso+Desp", "Hover"]

PDF_NAME_PATTERN = r"^[a-zA-Z0-9_-]+$"


class _Form(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)


# ---------------------- Registro ----------------------

class MotorIn(_Form):
    id: Optional[str] = None
    code: str = Field(min_length=1)
    # "HH:MM" en la entrada, minutos enteros una vez validado
    hours: Union[int, str] = "00:00"

    @field_validator("hours", mode="before")
    @classmethod
    def _hours_to_minutes(cls, v):
        try:
            return hhmm_to_minutes(v)
        except ValueError as ex:
            raise ValueError("Formato HH:MM") from ex


class BatteryIn(_Form):
    id: Optional[str] = None
    code: str = Field(min_length=1)
    cycles: int = 0

    @field_validator("cycles", mode="before")
    @classmethod
    def _cycles(cls, v):
        return to_int_or_none(v) or 0


class CameraIn(_Form):
    id: Optional[str] = None
    code: str = Field(min_length=1)
    description: Optional[str] = ""


class AircraftIn(_Form):
    name: str = Field(min_length=1)
    code: str = Field(min_length=1)
    part_num: Optional[str] = None
    serial_num: Optional[str] = None
    motors: List[MotorIn] = []
    batteries_main: List[BatteryIn] = Field(default=[], alias="batteriesMain")
    batteries_spare: List[BatteryIn] = Field(default=[], alias="batteriesSpare")
    cameras: List[CameraIn] = []


class OwnerIn(_Form):
    name: str = Field(min_length=1)
    id_type: Literal["CC", "NIT"] = Field(alias="idType")
    id_num: str = Field(min_length=1, alias="idNum")


class PilotIn(_Form):
    name: str = Field(min_length=1)
    cc: str = Field(min_length=1)
    license_num: str = Field(min_length=1, alias="licenseNum")
    license_type: str = Field(min_length=1, alias="licenseType")
    license_expiry: date = Field(alias="licenseExpiry")


# ---------------------- Vuelo ----------------------

class PreFlightIn(_Form):
    pilotInternal: int = Field(ge=1)
    pilotExternal: int = Field(ge=1)
    missionLeader: Optional[int] = None
    flightEngineer: Optional[int] = None
    batteries: List[str] = Field(min_length=1)
    camera: Optional[str] = None
    purpose: str = Field(min_length=1)
    estimatedTime: str = Field(min_length=1)
    location: str = Field(min_length=1)

    def crew(self) -> Dict[str, Optional[int]]:
        return {
            "pilotInternal": self.pilotInternal,
            "pilotExternal": self.pilotExternal,
            "missionLeader": self.missionLeader,
            "flightEngineer": self.flightEngineer,
        }

    def equipment(self) -> Dict:
        return {"batteries": list(self.batteries), "camera": self.camera}

    def prevuelo(self) -> Dict[str, str]:
        return {
            "purpose": self.purpose,
            "estimatedTime": self.estimatedTime,
            "location": self.location,
        }


class StartIn(_Form):
    hasPayload: bool = False
    weight: Optional[str] = ""

    @field_validator("weight", mode="before")
    @classmethod
    def _weight_as_text(cls, v):
        return "" if v is None else str(v)


class PhaseIn(_Form):
    name: PhaseName


class AbortIn(_Form):
    reason: Optional[str] = None


class PostFlightIn(_Form):
    status: str = Field(min_length=1)
    notes: Optional[str] = ""
    pdfName: Optional[str] = Field(default=None, pattern=PDF_NAME_PATTERN)
    signatures: Dict[str, str] = {}
