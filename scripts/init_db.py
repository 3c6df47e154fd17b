import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.veridrive.constants import ROLES
from app.veridrive.models import Role, User
from scripts._db_utils import script_session

ROLE_NAMES = {
    "admin": "Administrator",
    "owner": "Vehicle Owner",
    "buyer": "Buyer",
    "service": "Service Provider",
    "insurance": "Insurance",
    "government": "Government",
}


def seed_roles(s) -> dict[str, Role]:
    roles: dict[str, Role] = {}
    for key in ROLES:
        r = s.query(Role).filter(Role.key == key).one_or_none()
        if not r:
            r = Role(key=key, name=ROLE_NAMES.get(key, key.title()))
            s.add(r)
        roles[key] = r
    return roles


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed roles and the admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@veridrive.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///veridrive.db").strip()

    # Direct engine/session so release can seed without importing app.wsgi.
    with script_session(db_url) as s:
        roles = seed_roles(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                first_name="System",
                last_name="Admin",
                primary_role="admin",
                is_active=True,
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Roles: {', '.join(ROLES)}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
