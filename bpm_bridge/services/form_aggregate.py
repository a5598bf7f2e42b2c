"""
Form aggregate: one form header, its single typed detail and its approval
history, validated together before anything touches the database.

The store only accepts a ``FormAggregate``; it cannot be handed a detail row
that disagrees with the header's ``form_type``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from bpm_bridge.core.exceptions import MappingFailure
from bpm_bridge.models.bpm_form import BpmForm, DETAIL_MODELS, FormType

# Detail columns that must be present for each form type.
REQUIRED_DETAIL_FIELDS = {
    FormType.LEAVE: ("start_date", "end_date"),
    FormType.OVERTIME: ("overtime_date",),
    FormType.BUSINESS_TRIP: ("trip_date", "start_date", "end_date"),
    FormType.CANCEL_LEAVE: ("original_leave_form_id",),
}

REQUIRED_HEADER_FIELDS = ("form_code", "applicant_id")


@dataclass
class FormAggregate:
    """Mapped remote state of one form.

    ``header`` and ``detail`` only hold the keys the remote payload carried;
    absent keys leave the stored column untouched on upsert.
    """

    form_id: str
    form_type: str
    header: dict = field(default_factory=dict)
    detail: dict = field(default_factory=dict)
    history: list[dict] = field(default_factory=list)

    def validate(self) -> FormAggregate:
        """Raise MappingFailure unless header and detail are consistent."""
        if not self.form_id:
            raise MappingFailure("form_id is required")
        if self.form_type not in DETAIL_MODELS:
            raise MappingFailure(f"Unsupported form type: {self.form_type}")

        unknown = set(self.header) - set(BpmForm.SYNC_FIELDS)
        if unknown:
            raise MappingFailure(f"Unknown header fields: {sorted(unknown)}")
        if self.header.get("form_type", self.form_type) != self.form_type:
            raise MappingFailure("Header form_type does not match aggregate form_type")

        model, _ = DETAIL_MODELS[self.form_type]
        unknown = set(self.detail) - set(model.DETAIL_FIELDS)
        if unknown:
            raise MappingFailure(
                f"Fields {sorted(unknown)} do not belong to a {self.form_type} form",
                form_code=self.header.get("form_code"),
            )

        missing = [f for f in REQUIRED_HEADER_FIELDS if not self.header.get(f)]
        missing += [f for f in REQUIRED_DETAIL_FIELDS[self.form_type] if self.detail.get(f) is None]
        if missing:
            raise MappingFailure(
                f"{self.form_type} form {self.form_id} is missing {', '.join(missing)}",
                form_code=self.header.get("form_code"),
                missing=missing,
            )

        for entry in self.history:
            if not entry.get("approver_id") or not entry.get("action"):
                raise MappingFailure(
                    f"Approval entry of form {self.form_id} lacks approver_id or action",
                    form_code=self.header.get("form_code"),
                )
        return self

    @property
    def detail_model(self):
        return DETAIL_MODELS[self.form_type][0]

    @property
    def detail_attr(self) -> str:
        return DETAIL_MODELS[self.form_type][1]
