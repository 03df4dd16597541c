from labquote import db
from sqlalchemy.orm import relationship


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)  # compound name
    category = db.Column(db.String(100), nullable=True)
    note = db.Column(db.Text, nullable=True)

    items = relationship("QuoteItem", back_populates="product")

    def __repr__(self):
        return f"<Product id={self.id} name={self.name}>"
