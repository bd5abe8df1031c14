from app import app, db

# This script deletes the local database and creates a fresh one
# matching the current models. Items, reservations and admins are lost.
with app.app_context():
    db.drop_all()
    db.create_all()
    print("✅ Database has been reset! Run set_admin.py to add an admin.")
