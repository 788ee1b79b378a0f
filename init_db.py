import argparse
import asyncio
import os
from pathlib import Path

from sqlalchemy import select

from patternpioneer.config import DEFAULT_PATTERN_PRICE
from patternpioneer.helpers import slugify
from patternpioneer.infra.sql import make_async_engine
from patternpioneer.model import Pattern, create_schema

IMAGE_SUFFIXES = (".webp", ".png", ".jpg", ".jpeg")


def patterns_from_dir(directory: Path, price: int):
    files = sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
    )
    for path in files:
        name = path.stem
        yield {
            "name": name,
            "slug": slugify(name),
            "description": (
                f"Beautiful seamless {name.lower()} pattern, perfect for "
                "your creative projects. Commercial use allowed."
            ),
            "image_url": f"/patterns/{path.name}",
            "price": price,
            "is_active": True,
        }


async def seed(database_url: str, directory: Path | None, price: int):
    engine, SessionAsync = make_async_engine(database_url)
    async with engine.begin() as conn:
        await create_schema(conn)
    print('✅ schema created')

    if directory is not None:
        async with SessionAsync() as db:
            existing = set(
                (await db.execute(select(Pattern.slug))).scalars().all()
            )
            added = 0
            for data in patterns_from_dir(directory, price):
                if data["slug"] in existing:
                    continue
                db.add(Pattern(**data))
                existing.add(data["slug"])
                added += 1
            await db.commit()
        print(f'✅ seeded {added} patterns from {directory}')

    await engine.dispose()


def main():
    ap = argparse.ArgumentParser(
        description="Create the database schema and optionally seed patterns "
                    "from a directory of images.",
    )
    ap.add_argument("--patterns-dir", type=Path, default=None,
                    help="directory of pattern images to seed from")
    ap.add_argument("--price", type=int, default=DEFAULT_PATTERN_PRICE,
                    help="price in cents for seeded patterns (default: 699)")
    args = ap.parse_args()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise SystemExit("DATABASE_URL is not set")
    if args.patterns_dir is not None and not args.patterns_dir.is_dir():
        raise SystemExit(f"not a directory: {args.patterns_dir}")

    asyncio.run(seed(database_url, args.patterns_dir, args.price))


if __name__ == '__main__':
    main()
