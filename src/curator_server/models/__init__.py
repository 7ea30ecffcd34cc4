"""SQLAlchemy ORM models."""

# Import all models so Base.metadata registers them for create_all().
from curator_server.models.host import HostRecord as HostRecord
