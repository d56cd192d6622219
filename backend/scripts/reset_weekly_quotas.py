"""
Backend wrapper for the weekly quota reset.

Runs one sweep against the configured Supabase project and prints how many
profiles were reset. Meant for an external scheduler (Sunday 00:00 UTC).
"""

import asyncio
import sys
from pathlib import Path

# Get project root (backend's parent)
backend_dir = Path(__file__).parent.parent
project_root = backend_dir.parent

sys.path.insert(0, str(backend_dir))
sys.path.insert(0, str(project_root / "fusha_tutor_memory" / "src"))

from dotenv import load_dotenv
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv(backend_dir / ".env")


async def main() -> int:
    from lib.logger import get_logger, setup_logging
    from lib.services import build_services
    from lib.supabase_client import create_supabase_client

    setup_logging()
    logger = get_logger("backend.scripts.reset_weekly_quotas")

    services = build_services(create_supabase_client())
    count = await services.quota_tracker.reset_expired()
    logger.success("Weekly quota reset finished", data={"profiles_reset": count})
    return count


if __name__ == "__main__":
    try:
        reset = asyncio.run(main())
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc(file=sys.stderr)
        sys.exit(1)
    print(reset)
