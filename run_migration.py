import asyncio
import logging
from convenio.core.init_db import init_db

logging.basicConfig(level=logging.INFO)


async def main():
    print("Starting manual migration...")
    try:
        await init_db()
        print("Migration completed successfully.")
    except Exception as e:
        print(f"Migration failed: {e}")
        raise SystemExit(1)

if __name__ == "__main__":
    asyncio.run(main())
