from sqlalchemy import Column, Integer, String, DateTime, Text, Index
from sqlalchemy.sql import func
from bulk_data.database import Base


class DataRow(Base):
    __tablename__ = "data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, nullable=True, index=True)
    resource_json = Column(Text, nullable=False)
    fhir_type = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    modified_date = Column(DateTime(timezone=True), nullable=True)
    group_id = Column(Integer, nullable=True)

    __table_args__ = (
        Index('ix_data_fhir_type_group', fhir_type, group_id),
    )
