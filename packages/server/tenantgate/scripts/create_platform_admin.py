"""
Script to create (or promote) a platform admin and print a session token
for local testing.
"""

import argparse
import asyncio

from sqlmodel import select

from tenantgate.core.auth import create_jwt
from tenantgate.core.database import get_session_context, init_db
from tenantgate.models.user import User


async def create_admin(email: str, display_name: str | None, create_tables: bool):
    if create_tables:
        await init_db()

    async with get_session_context() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if not user:
            user = User(
                email=email,
                display_name=display_name or email.split("@")[0],
                is_platform_admin=True,
            )
            session.add(user)
            print(f"Created platform admin: {email}")
        elif not user.is_platform_admin:
            user.is_platform_admin = True
            session.add(user)
            print(f"Promoted {email} to platform admin.")
        else:
            print(f"User {email} is already a platform admin.")

        await session.flush()
        user_id = user.id

    token, _ = create_jwt(user_id)
    print(f"User id: {user_id}")
    print(f"Bearer token: {token}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a local platform admin.")
    parser.add_argument("--email", required=True, help="Email address for the user")
    parser.add_argument("--display-name", default=None, help="Display name")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables first (development databases only)",
    )

    args = parser.parse_args()

    asyncio.run(create_admin(args.email, args.display_name, args.create_tables))
