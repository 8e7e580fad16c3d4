from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple

log = logging.getLogger("bloodalert.models")


BloodGroup = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]
Urgency = Literal["Critical", "High", "Medium"]

BLOOD_GROUPS: Tuple[str, ...] = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-")
URGENCIES: Tuple[str, ...] = ("Critical", "High", "Medium")


@dataclass(frozen=True)
class Feed:
    name: str
    path: str
    data_key: str


URGENT = Feed(name="urgent", path="/api/requests/urgent", data_key="urgentRequests")
EMERGENCY = Feed(name="emergency", path="/api/requests/emergency", data_key="emergencyRequests")
EMERGENCY_ALL = Feed(name="emergency_all", path="/api/requests/emergency/all", data_key="emergencyRequests")


def _str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _non_negative_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        n = int(v)
    except (TypeError, ValueError):
        return None
    if n != v and not isinstance(v, str):
        # 2.5 days is not a whole day count
        return None
    return n if n >= 0 else None


@dataclass(frozen=True, slots=True)
class AlertRecord:
    id: str
    patient_name: str
    blood_group: BloodGroup
    required_units: int
    urgency: Urgency
    hospital_name: str
    location: str

    days_left: Optional[int] = None
    hours_left: Optional[int] = None

    additional_notes: Optional[str] = None
    hospital_phone: Optional[str] = None
    patient_contact: Optional[str] = None
    time_ago: Optional[str] = None

    @property
    def is_critical(self) -> bool:
        return self.urgency == "Critical"

    def time_left_label(self) -> str:
        if self.hours_left is not None and self.hours_left <= 24:
            return f"{self.hours_left} hours left"
        days = self.days_left
        if days is None:
            # hours_left > 24 with no day count
            days = (self.hours_left or 0) // 24
        if days == 0:
            return "Needed TODAY"
        if days == 1:
            return "1 day left"
        return f"{days} days left"

    def share_text(self) -> str:
        days = self.days_left if self.days_left is not None else (self.hours_left or 0) // 24
        return (
            "URGENT BLOOD REQUEST\n"
            "\n"
            f"Patient: {self.patient_name}\n"
            f"Blood Type: {self.blood_group}\n"
            f"Units Needed: {self.required_units}\n"
            f"Hospital: {self.hospital_name}\n"
            f"Location: {self.location}\n"
            f"Time Left: {days} days\n"
            "\n"
            "Every donation saves a life! Please help or share.\n"
            "\n"
            "#BloodDonation #SaveLives"
        )

    @staticmethod
    def from_json(obj: Any) -> Optional["AlertRecord"]:
        """
        Build a record from one element of a feed list.

        Returns None when the element has no id or breaks a field invariant;
        the caller decides whether to drop or reject.
        """
        if not isinstance(obj, dict):
            return None

        rid = _str(obj.get("_id")) or _str(obj.get("id"))
        if not rid:
            return None

        blood_group = _str(obj.get("bloodGroup"))
        if blood_group not in BLOOD_GROUPS:
            return None

        urgency = _str(obj.get("urgency"))
        if urgency not in URGENCIES:
            return None

        units = obj.get("requiredUnits")
        if isinstance(units, bool) or not isinstance(units, int) or units <= 0:
            return None

        days_left = _non_negative_int(obj.get("daysLeft"))
        hours_left = _non_negative_int(obj.get("hoursLeft"))
        if days_left is None and hours_left is None:
            return None

        return AlertRecord(
            id=rid,
            patient_name=_str(obj.get("patientName")) or "Unknown patient",
            blood_group=blood_group,  # type: ignore[arg-type]
            required_units=units,
            urgency=urgency,  # type: ignore[arg-type]
            hospital_name=_str(obj.get("hospitalName")) or "",
            location=_str(obj.get("location")) or "",
            days_left=days_left,
            hours_left=hours_left,
            additional_notes=_str(obj.get("additionalNotes")),
            hospital_phone=_str(obj.get("hospitalPhone")),
            patient_contact=_str(obj.get("patientContact")),
            time_ago=_str(obj.get("timeAgo")),
        )

    def to_json(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "_id": self.id,
            "patientName": self.patient_name,
            "bloodGroup": self.blood_group,
            "requiredUnits": self.required_units,
            "urgency": self.urgency,
            "hospitalName": self.hospital_name,
            "location": self.location,
        }
        optional = {
            "daysLeft": self.days_left,
            "hoursLeft": self.hours_left,
            "additionalNotes": self.additional_notes,
            "hospitalPhone": self.hospital_phone,
            "patientContact": self.patient_contact,
            "timeAgo": self.time_ago,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        return d


def parse_feed_list(items: List[Any], feed: Feed) -> List[AlertRecord]:
    """Parse a feed list in server order, dropping malformed entries."""
    out: List[AlertRecord] = []
    for raw in items:
        rec = AlertRecord.from_json(raw)
        if rec is None:
            rid = raw.get("_id") or raw.get("id") if isinstance(raw, dict) else None
            log.warning("Dropping malformed %s record id=%s", feed.name, rid)
            continue
        out.append(rec)
    return out
