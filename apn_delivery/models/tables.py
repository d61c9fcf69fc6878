from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Table, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apn_delivery.models.db import Base


group_devices = Table(
    "apn_devices_apn_groups",
    Base.metadata,
    Column("group_id", ForeignKey("apn_groups.id"), primary_key=True),
    Column("device_id", ForeignKey("apn_devices.id"), primary_key=True),
)


class App(Base):
    __tablename__ = "apn_apps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    apn_dev_cert: Mapped[str | None] = mapped_column(Text, nullable=True)
    apn_prod_cert: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    devices: Mapped[list[Device]] = relationship(back_populates="app", cascade="all, delete-orphan")
    groups: Mapped[list[Group]] = relationship(back_populates="app", cascade="all, delete-orphan")

    def cert_for(self, environment: str) -> str | None:
        return self.apn_prod_cert if environment == "PRODUCTION" else self.apn_dev_cert


class Device(Base):
    __tablename__ = "apn_devices"
    __table_args__ = (UniqueConstraint("app_id", "token", name="uq_apn_devices_app_token"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    app_id: Mapped[int | None] = mapped_column(ForeignKey("apn_apps.id"), nullable=True, index=True)
    token: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    last_registered_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    feedback_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    app: Mapped[App | None] = relationship(back_populates="devices")
    notifications: Mapped[list[Notification]] = relationship(back_populates="device", cascade="all, delete-orphan")
    groups: Mapped[list[Group]] = relationship(secondary=group_devices, back_populates="devices")


class Group(Base):
    __tablename__ = "apn_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    app_id: Mapped[int] = mapped_column(ForeignKey("apn_apps.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    app: Mapped[App] = relationship(back_populates="groups")
    devices: Mapped[list[Device]] = relationship(secondary=group_devices, back_populates="groups")
    group_notifications: Mapped[list[GroupNotification]] = relationship(
        back_populates="group", cascade="all, delete-orphan"
    )


class Notification(Base):
    __tablename__ = "apn_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    device_id: Mapped[int | None] = mapped_column(ForeignKey("apn_devices.id"), nullable=True, index=True)
    alert: Mapped[str | None] = mapped_column(String(255), nullable=True)
    badge: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sound: Mapped[str | None] = mapped_column(String(255), nullable=True)
    custom_properties: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    error_response_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    device: Mapped[Device | None] = relationship(back_populates="notifications")


class GroupNotification(Base):
    __tablename__ = "apn_group_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("apn_groups.id"), nullable=False, index=True)
    alert: Mapped[str | None] = mapped_column(String(255), nullable=True)
    badge: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sound: Mapped[str | None] = mapped_column(String(255), nullable=True)
    custom_properties: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    group: Mapped[Group] = relationship(back_populates="group_notifications")
