"""Management CLI.

Usage:
    python -m app.cli seed-locations          # Insert locations, factories and the placeholder actor
    python -m app.cli list-locations          # Show the location catalog
    python -m app.cli issue-token <username>  # Print a bearer token for a user
"""

import sys

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from app.auth.jwt import create_access_token
from app.config import settings
from app.models.factory import Factory
from app.models.location import Location
from app.models.user import User
from app.services.locations import DEFAULT_LOCATIONS

# (code, name, ppid_code)
DEFAULT_FACTORIES = [
    ("MX", "Juarez", "WSJ00"),
    ("A1", "Hsinchu", "WS900"),
    ("N2", "Hukou", "WSM00"),
]

DELETED_ACTOR_USERNAME = "deleted_user@example.com"


def get_engine():
    return create_engine(settings.database_url_sync)


def seed_locations():
    """Idempotently insert the fixed catalog rows."""
    with Session(get_engine()) as session:
        added = 0
        for loc_id, name, category in DEFAULT_LOCATIONS:
            if session.get(Location, loc_id) is None:
                session.add(Location(id=loc_id, name=name, category=category))
                added += 1

        for code, name, ppid_code in DEFAULT_FACTORIES:
            exists = session.execute(
                select(Factory.id).where(Factory.code == code)
            ).first()
            if not exists:
                session.add(Factory(code=code, name=name, ppid_code=ppid_code))
                added += 1

        if session.get(User, settings.deleted_actor_id) is None:
            session.add(User(
                id=settings.deleted_actor_id,
                username=DELETED_ACTOR_USERNAME,
                full_name="Deleted user",
                is_active=False,
            ))
            added += 1

        session.commit()
    print(f"  Seeded {added} row(s)")


def list_locations():
    with Session(get_engine()) as session:
        rows = session.execute(select(Location).order_by(Location.id)).scalars().all()
        for loc in rows:
            print(f"  {loc.id:>3}  {loc.name:<24} {loc.category.value}")
    print(f"\n{len(rows)} location(s)")


def issue_token(username: str):
    with Session(get_engine()) as session:
        user = session.execute(
            select(User).where(User.username == username)
        ).scalar_one_or_none()
        if user is None or not user.is_active:
            print(f"  No active user {username}")
            sys.exit(1)
        print(create_access_token(user.id, is_admin=user.is_admin))


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "seed-locations":
        seed_locations()
    elif cmd == "list-locations":
        list_locations()
    elif cmd == "issue-token" and len(sys.argv) > 2:
        issue_token(sys.argv[2])
    else:
        print("Usage: python -m app.cli [seed-locations|list-locations|issue-token <username>]")
