from sqlalchemy import Column, Integer, String, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from app.db.base import Base


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    email_notifications = Column(Boolean, default=True, nullable=False)
    telegram_notifications = Column(Boolean, default=True, nullable=False)
    telegram_chat_id = Column(String, nullable=True)

    user = relationship("User", back_populates="settings")
