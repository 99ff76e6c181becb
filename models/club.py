from sqlalchemy import Column, BigInteger, Integer, String
from models.base import Base, SyncTrackedMixin


class Club(SyncTrackedMixin, Base):
    """Club as listed in the source's club rating."""
    __tablename__ = "clubs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    name = Column(String(255), nullable=False, index=True)
    region = Column(String(255), nullable=True)
    president = Column(String(255), nullable=True)
    members_count = Column(Integer, nullable=True)
