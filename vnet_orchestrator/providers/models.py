# file: models.py

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint, func
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class ResourceGroup(Base):
    __tablename__ = "resource_groups"
    name = Column(String, primary_key=True)
    id = Column(String, unique=True, nullable=False)
    location = Column(String, nullable=False)
    tags = Column(JSON, default=dict)
    status = Column(String, default="Succeeded")
    created_at = Column(DateTime, server_default=func.now())


class Resource(Base):
    __tablename__ = "resources"
    __table_args__ = (UniqueConstraint("resource_group", "kind", "name"),)

    id = Column(String, primary_key=True)           # ARM-style resource id
    resource_group = Column(String, ForeignKey("resource_groups.name"), nullable=False)
    kind = Column(String, nullable=False)
    name = Column(String, nullable=False)
    location = Column(String, nullable=False)
    properties = Column(JSON, default=dict)
    provisioning_state = Column(String, default="Updating")
    settle_remaining = Column(Integer, default=0)   # connections: reads left before Connected
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


ResourceGroup.resources = relationship("Resource", backref="group", cascade="all, delete-orphan")


class TroubleshootingRecord(Base):
    __tablename__ = "troubleshooting_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_group = Column(String, ForeignKey("resource_groups.name"), nullable=False)
    target_id = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    code = Column(String, nullable=False)
    details = Column(JSON, default=list)
    created_at = Column(DateTime, server_default=func.now())


ResourceGroup.troubleshooting_records = relationship(
    "TroubleshootingRecord", backref="group", cascade="all, delete-orphan"
)
