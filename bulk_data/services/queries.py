from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import Select, func, select

from bulk_data.models.data_row import DataRow

BASE_COLUMNS = ("resource_json", "fhir_type", "patient_id", "group_id")


class ResourceQuery:
    """Builds the filtered SELECT and COUNT statements over the data table."""

    def __init__(
        self,
        types: Sequence[str] = (),
        group: Optional[int] = None,
        since: Optional[datetime] = None,
        patients: Optional[Sequence[str]] = None,
        extended: bool = False
    ):
        self.types = [t for t in types if t]
        self.group = group
        self.since = since
        self.patients = list(patients) if patients else None
        self.extended = extended

    @property
    def columns(self):
        names = BASE_COLUMNS + (("modified_date",) if self.extended else ())
        return [getattr(DataRow, name) for name in names]

    def _conditions(self):
        conditions = []
        if self.types:
            conditions.append(DataRow.fhir_type.in_(self.types))
        if self.group is not None:
            conditions.append(DataRow.group_id == self.group)
        if self.since is not None:
            conditions.append(DataRow.modified_date >= self.since)
        if self.patients:
            conditions.append(DataRow.patient_id.in_(self.patients))
        return conditions

    def select(self) -> Select:
        query = select(*self.columns)
        conditions = self._conditions()
        if conditions:
            query = query.where(*conditions)
        return query.order_by(DataRow.id)

    def count(self) -> Select:
        query = select(func.count()).select_from(DataRow)
        conditions = self._conditions()
        if conditions:
            query = query.where(*conditions)
        return query

    def count_by_type(self) -> Select:
        query = select(DataRow.fhir_type, func.count().label("cnt"))
        conditions = self._conditions()
        if conditions:
            query = query.where(*conditions)
        return query.group_by(DataRow.fhir_type).order_by(DataRow.fhir_type)
