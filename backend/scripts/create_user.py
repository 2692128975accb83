# scripts/create_user.py
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import argparse
from db.session import SessionLocal
from db import models as db_models
from core.security import create_access_token


def main(argv=None):
    """
    Create (or re-activate) a local account and print a bearer token for it.
    Accounts normally come from the auth service; this is for local runs.
    """
    parser = argparse.ArgumentParser()
    parser.add_argument("email")
    parser.add_argument("--name")
    parser.add_argument("--admin", action="store_true")
    parser.add_argument("--minutes", type=int, default=None, help="token lifetime")
    args = parser.parse_args(argv)

    db = SessionLocal()
    try:
        user = db.query(db_models.User).filter(db_models.User.email == args.email).one_or_none()
        if user:
            user.is_active = True
            if args.admin:
                user.is_admin = True
            if args.name:
                user.name = args.name
            db.commit()
            print(f"Updated user {user.email} (id={user.id})")
        else:
            user = db_models.User(
                email=args.email,
                name=args.name,
                is_active=True,
                is_admin=bool(args.admin),
            )
            db.add(user)
            db.commit()
            db.refresh(user)
            print(f"Created user {user.email} (id={user.id})")
        token = create_access_token(str(user.id), expires_minutes=args.minutes)
    finally:
        db.close()

    print(token)
    return token


if __name__ == "__main__":
    main()
