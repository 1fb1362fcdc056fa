from sqlalchemy import Column, Integer, String, Boolean, Text, Numeric
from app.db import Base

class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(64), unique=True, index=True, nullable=False)
    name = Column(String(256), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    category = Column(String(64), nullable=True, index=True)
    image = Column(String(512), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    age_restricted = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<Product sku={self.sku} name={self.name} age_restricted={self.age_restricted}>"
