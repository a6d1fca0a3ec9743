"""
Report project role names stored in the database that the deployed
permission matrix does not know. Exits non-zero when drift is found so it
can gate a deploy.
"""

import argparse
import asyncio
import sys

from tenantgate.core.database import get_session_context
from tenantgate.core.logging_config import configure_logging
from tenantgate.services.memberships import distinct_stored_project_roles
from tenantgate.services.permissions import MATRIX_VERSION, detect_role_drift


async def check() -> int:
    async with get_session_context() as session:
        stored = await distinct_stored_project_roles(session)

    drift = detect_role_drift(stored)
    print(f"Permission matrix version: {MATRIX_VERSION}")
    print(f"Stored role names: {', '.join(sorted(stored)) or '(none)'}")
    if drift:
        print(f"Unknown role names: {', '.join(sorted(drift))}")
        return 1
    print("No drift.")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Check stored roles against the permission matrix.")
    parser.add_argument("--log-level", default="warning")
    args = parser.parse_args()

    configure_logging(args.log_level, "text")
    sys.exit(asyncio.run(check()))
