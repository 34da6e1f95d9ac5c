import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_engine.db.base import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class Asset(Base):
    __tablename__ = "Assets"

    AssetID = Column(String(36), primary_key=True, default=_new_id)
    TenantID = Column(String(64), nullable=False, index=True)
    BusinessUnitID = Column(String(64), nullable=False, index=True)
    Code = Column(String(100))
    Name = Column(String(255), nullable=False)
    AssetType = Column(String(100), nullable=False, index=True)
    RequiresOperator = Column(Boolean, default=False, nullable=False)
    RequiresTracking = Column(Boolean, default=False, nullable=False)
    CurrentLocation = Column(String(255))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    State = relationship("AssetState", back_populates="Asset", uselist=False, cascade="all, delete-orphan")
    ContractAssets = relationship("ContractAsset", back_populates="Asset", cascade="all, delete-orphan")
    Incidents = relationship("Incident", back_populates="Asset", cascade="all, delete-orphan")
    UsageReports = relationship("UsageReport", back_populates="Asset", cascade="all, delete-orphan")


class AssetState(Base):
    __tablename__ = "AssetStates"

    AssetID = Column(String(36), ForeignKey("Assets.AssetID"), primary_key=True)
    WorkflowID = Column(String(100), nullable=False)
    CurrentState = Column(String(50), nullable=False)
    Version = Column(Integer, nullable=False)
    UpdatedAt = Column(DateTime, server_default=func.now())

    Asset = relationship("Asset", back_populates="State")

    # UPDATE ... WHERE Version = :loaded; a concurrent writer raises StaleDataError.
    __mapper_args__ = {"version_id_col": Version}


class RentalContract(Base):
    __tablename__ = "RentalContracts"

    ContractID = Column(String(36), primary_key=True, default=_new_id)
    TenantID = Column(String(64), nullable=False, index=True)
    BusinessUnitID = Column(String(64), nullable=False, index=True)
    ClientID = Column(String(100), nullable=False)
    Status = Column(String(20), nullable=False, default="DRAFT")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    ContractAssets = relationship("ContractAsset", back_populates="Contract", cascade="all, delete-orphan")
    Incidents = relationship("Incident", back_populates="Contract")
    UsageReports = relationship("UsageReport", back_populates="Contract")


class ContractAsset(Base):
    __tablename__ = "ContractAssets"

    ContractAssetID = Column(String(36), primary_key=True, default=_new_id)
    ContractID = Column(String(36), ForeignKey("RentalContracts.ContractID"), nullable=False, index=True)
    AssetID = Column(String(36), ForeignKey("Assets.AssetID"), nullable=False, index=True)
    Obra = Column(String(255), nullable=False)
    EstimatedStart = Column(Date, nullable=False)
    EstimatedEnd = Column(Date, nullable=False)
    EstimatedHours = Column(Numeric(12, 2))
    EstimatedDays = Column(Integer)
    ActualEnd = Column(DateTime)
    ActualHours = Column(Numeric(12, 2))
    NeedsPostObraMaintenance = Column(Boolean)
    CreatedDate = Column(DateTime, server_default=func.now())

    Contract = relationship("RentalContract", back_populates="ContractAssets")
    Asset = relationship("Asset", back_populates="ContractAssets")


class Incident(Base):
    __tablename__ = "Incidents"

    IncidentID = Column(String(36), primary_key=True, default=_new_id)
    AssetID = Column(String(36), ForeignKey("Assets.AssetID"), nullable=False, index=True)
    ContractID = Column(String(36), ForeignKey("RentalContracts.ContractID"), nullable=False, index=True)
    Description = Column(String(2000), nullable=False)
    Resolved = Column(Boolean, default=False, nullable=False)
    Decision = Column(String(20))
    Resolution = Column(String(2000))
    ResolvedAt = Column(DateTime)
    Version = Column(Integer, nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())

    Asset = relationship("Asset", back_populates="Incidents")
    Contract = relationship("RentalContract", back_populates="Incidents")

    __mapper_args__ = {"version_id_col": Version}


class UsageReport(Base):
    __tablename__ = "UsageReports"

    ReportID = Column(String(36), primary_key=True, default=_new_id)
    AssetID = Column(String(36), ForeignKey("Assets.AssetID"), nullable=False, index=True)
    ContractID = Column(String(36), ForeignKey("RentalContracts.ContractID"), nullable=False, index=True)
    Metric = Column(String(50), nullable=False)
    Value = Column(Numeric(12, 2), nullable=False)
    ReportedBy = Column(String(255), nullable=False)
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())

    Asset = relationship("Asset", back_populates="UsageReports")
    Contract = relationship("RentalContract", back_populates="UsageReports")


class AssetEvent(Base):
    __tablename__ = "AssetEvents"

    EventID = Column(String(36), primary_key=True, default=_new_id)
    TenantID = Column(String(64), nullable=False, index=True)
    BusinessUnitID = Column(String(64), nullable=False, index=True)
    # No FK: events outlive deleted assets and contract-level events carry none.
    AssetID = Column(String(36), index=True)
    EventType = Column(String(100), nullable=False)
    Source = Column(String(50), nullable=False, default="system")
    Payload = Column(Text)
    CreatedAt = Column(DateTime, nullable=False)
