"""CLI script to provision an admin account.

Usage:
    python scripts/create_admin.py EMAIL --password PASSWORD --name NAME [--specialization S]
    python scripts/create_admin.py EMAIL --promote

Registration over HTTP always creates `user` accounts; this is the only
way to create or promote an admin.
"""
import sys
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `medtrainer` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from pydantic import ValidationError as SchemaError
from sqlmodel import Session
from medtrainer.database import engine, create_db_and_tables
from medtrainer import services, schemas
from medtrainer.errors import ApiError
from medtrainer.models import Role


def main(argv=None) -> int:
    """Create a new admin or promote an existing user. Returns an exit code."""
    parser = argparse.ArgumentParser(description="Create or promote an admin account")
    parser.add_argument('email')
    parser.add_argument('--password', help='Password for a new account')
    parser.add_argument('--name', help='Display name for a new account')
    parser.add_argument('--specialization', default='Administration')
    parser.add_argument('--promote', action='store_true', help='Promote an existing user instead of creating one')
    args = parser.parse_args(argv)

    create_db_and_tables()
    with Session(engine) as session:
        auth = services.AuthService(session)
        try:
            if args.promote:
                user = auth.promote_to_admin(args.email)
                print(f'Promoted {user.email} (id {user.id}) to admin')
                return 0
            if not args.password or not args.name:
                parser.error('--password and --name are required unless --promote is given')
            payload = schemas.RegisterIn(
                email=args.email,
                password=args.password,
                name=args.name,
                specialization=args.specialization,
            )
            user = auth.register(payload.email, payload.password, payload.name, payload.specialization, role=Role.admin)
        except SchemaError as e:
            print(f'Invalid input: {e}')
            return 2
        except ApiError as e:
            print(f'Error: {e.message}')
            return 1
    print(f'Created admin {user.email} (id {user.id})')
    return 0


if __name__ == '__main__':
    sys.exit(main())
