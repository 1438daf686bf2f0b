from __future__ import annotations

import argparse
import asyncio
import logging
from sqlalchemy import select

from ems.config import settings
from ems.database import Database
from ems.models.enums import Role
from ems.models.user import User

logger = logging.getLogger(__name__)


async def make_admin(database: Database, email: str) -> bool:
    async with database.session_factory() as session:
        result = await session.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if user is None:
            return False
        user.role = Role.ADMIN
        user.email_verified = True
        await session.commit()
    return True


async def _run(email: str) -> int:
    database = Database(settings.SQLALCHEMY_DATABASE_URI)
    try:
        promoted = await make_admin(database, email)
    finally:
        await database.dispose()
    if not promoted:
        logger.error("User with email %s not found. Sign up first.", email)
        return 1
    logger.info("%s is now an admin", email)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="ems-make-admin", description="Promote an existing user to admin.")
    parser.add_argument("email")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_run(args.email))


if __name__ == "__main__":
    raise SystemExit(main())
