from decimal import Decimal

from app import app, db
from models import Item

# This script populates your DB with a few sample items
with app.app_context():
    samples = [
        {"name": "Team Hoodie", "description": "Heavyweight fleece with the logo on the chest.", "price": "45.00", "stock": 20},
        {"name": "Logo T-Shirt", "description": "Cotton tee, unisex fit.", "price": "18.00", "stock": 50},
        {"name": "Water Bottle", "description": "Insulated steel, 500ml.", "price": "15.50", "stock": 30},
        {"name": "Tote Bag", "description": "Canvas tote for conference days.", "price": "9.00", "stock": 0},
    ]

    # Add them to DB if they don't exist
    for sample in samples:
        exists = Item.query.filter_by(name=sample["name"]).first()
        if not exists:
            db.session.add(Item(
                name=sample["name"],
                description=sample["description"],
                price=Decimal(sample["price"]),
                stock=sample["stock"],
                active=True,
            ))

    db.session.commit()
    print("✅ Sample items seeded!")
