#!/usr/bin/env python3
"""
Add an email to the administrators list. Works for accounts that don't exist yet.

Usage:
  python set_admin.py your@email.com
  python set_admin.py your@email.com --password 's3cret-pass' --name 'Jane Doe'
  python set_admin.py your@email.com --remove

With --password the sign-in account is created (or its password reset) too.
"""
import argparse

from constants import MIN_PASSWORD_LENGTH


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Grant or revoke admin access by email')
    parser.add_argument('email', help='Email address')
    parser.add_argument('--password', help=f'Create/update the sign-in account (min {MIN_PASSWORD_LENGTH} chars)')
    parser.add_argument('--name', help='Full name for a newly created account')
    parser.add_argument('--remove', action='store_true', help='Remove the email from the administrators list')
    args = parser.parse_args()

    if args.password is not None and len(args.password) < MIN_PASSWORD_LENGTH:
        parser.error(f"password must be at least {MIN_PASSWORD_LENGTH} characters")

    from app import app, db
    from models import User, Administrator
    from sqlalchemy import func
    from validation import validate_email
    from werkzeug.security import generate_password_hash

    email = args.email.strip().lower()
    if not validate_email(email):
        parser.error(f"invalid email address: {args.email}")

    with app.app_context():
        entry = Administrator.query.filter(func.lower(Administrator.email) == email).first()

        if args.remove:
            if entry:
                db.session.delete(entry)
                db.session.commit()
                print(f"Removed! {email} no longer has admin access.")
            else:
                print(f"{email} was not an admin.")
            raise SystemExit(0)

        if entry:
            print(f"{email} is already an admin.")
        else:
            db.session.add(Administrator(email=email))
            print(f"Done! {email} is now an admin.")

        if args.password:
            user = User.query.filter(func.lower(User.email) == email).first()
            if user:
                user.password_hash = generate_password_hash(args.password)
                print(f"Password updated for {email}.")
            else:
                db.session.add(User(email=email, full_name=args.name,
                                    password_hash=generate_password_hash(args.password)))
                print(f"Account created for {email}.")
        db.session.commit()
