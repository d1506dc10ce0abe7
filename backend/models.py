from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, UniqueConstraint
from database import Base
from datetime import datetime


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, nullable=True)
    role = Column(String, default="user")  # admin, user
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Ports an admin set aside for this user
    reserved_ports = Column(JSON, default=list)  # [25570, 25571]
    reserved_port_ranges = Column(JSON, default=list)  # [{"start": 25580, "end": 25585, "description": ""}]

    @property
    def is_admin(self) -> bool:
        return self.role in ("admin", "owner")


class Server(Base):
    __tablename__ = "servers"
    __table_args__ = (
        UniqueConstraint("owner_email", "server_name", name="uq_server_owner_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    unique_id = Column(String, unique=True, index=True, nullable=False)
    owner_email = Column(String, index=True, nullable=False)
    server_name = Column(String, nullable=False)
    server_type = Column(String, nullable=False)  # paper, fabric, forge, ...
    version = Column(String, nullable=False)
    memory_mb = Column(Integer, default=2048)
    server_config = Column(JSON, default=dict)  # game rules and server.properties overrides

    environment_id = Column(String, nullable=False, default="local")
    port = Column(Integer, nullable=False)
    rcon_port = Column(Integer, nullable=True)
    subdomain_name = Column(String, unique=True, index=True, nullable=True)
    dns_record_id = Column(String, nullable=True)

    status = Column(String, default="offline")  # offline|starting|online|crashed|unhealthy|paused
    container_name = Column(String, nullable=False)
    files_root = Column(String, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PortReservation(Base):
    __tablename__ = "port_reservations"
    __table_args__ = (
        UniqueConstraint("environment_id", "port", name="uq_port_environment"),
    )

    id = Column(Integer, primary_key=True, index=True)
    environment_id = Column(String, nullable=False, index=True)
    port = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)  # game|rcon
    server_id = Column(String, index=True, nullable=True)  # Server.unique_id
    owner_email = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ServerProxyBinding(Base):
    __tablename__ = "server_proxy_bindings"

    id = Column(Integer, primary_key=True, index=True)
    server_id = Column(String, unique=True, index=True, nullable=False)
    target_proxy_ids = Column(JSON, default=list)
    strategy = Column(String, default="priority")  # priority|round-robin|least-connections|custom
    fallback_proxy_ids = Column(JSON, default=list)
    primary_proxy_id = Column(String, nullable=True)
    proxy_overrides = Column(JSON, default=dict)  # {proxy_id: {...}}
    restricted = Column(Boolean, default=True)
    forwarding_mode = Column(String, nullable=True)
    last_results = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
