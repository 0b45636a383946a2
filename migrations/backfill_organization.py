#!/usr/bin/env python3
"""
MongoDB Backfill: assign an organization to legacy documents

Legacy rooms were stored without organization_id. Every entity now requires
one, so this one-time tool:
- assigns the target organization to rooms that have none
- copies each room's organization_id onto its sessions, messages and
  summaries that have none
- reports orphans (documents whose room no longer exists) without touching them

Usage:
    python migrations/backfill_organization.py --organization-slug acme            # Preview
    python migrations/backfill_organization.py --organization-slug acme --execute  # Apply
"""

import asyncio
import argparse
import os
import sys

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient

MISSING_ORGANIZATION = {
    "$or": [
        {"organization_id": {"$exists": False}},
        {"organization_id": None},
        {"organization_id": ""},
    ]
}

DERIVED_COLLECTIONS = ["chat_sessions", "messages", "summaries"]


class OrganizationBackfill:
    """Backfill organization_id on rooms and everything hanging off them."""

    def __init__(
        self,
        mongodb_url: str,
        database_name: str,
        organization_id: str = None,
        organization_slug: str = None,
        dry_run: bool = True,
    ):
        self.mongodb_url = mongodb_url
        self.database_name = database_name
        self.organization_id = organization_id
        self.organization_slug = organization_slug
        self.dry_run = dry_run
        self.client = None
        self.db = None

    async def connect(self):
        print(f"🔌 Connecting to MongoDB: {self.mongodb_url}")
        self.client = AsyncIOMotorClient(self.mongodb_url)
        self.db = self.client[self.database_name]
        await self.client.admin.command('ping')
        print("✅ Connected successfully")

    async def close(self):
        if self.client:
            self.client.close()
            print("🔌 Connection closed")

    async def resolve_organization(self) -> dict:
        """Find the target organization by id or slug."""
        if self.organization_id:
            try:
                query = {"_id": ObjectId(self.organization_id)}
            except InvalidId:
                raise SystemExit(f"❌ Not a valid organization id: {self.organization_id}")
        else:
            query = {"slug": self.organization_slug}

        organization = await self.db.organizations.find_one(query)
        if organization is None:
            raise SystemExit(f"❌ Organization not found: {query}")
        return organization

    async def get_stats(self) -> dict:
        """Count documents missing organization_id per collection."""
        stats = {}
        for collection in ["rooms"] + DERIVED_COLLECTIONS:
            total = await self.db[collection].count_documents({})
            missing = await self.db[collection].count_documents(MISSING_ORGANIZATION)
            stats[collection] = {"total": total, "missing_organization": missing}
        return stats

    def print_stats(self, title: str, stats: dict):
        print(f"\n📊 {title}:")
        for collection, counts in stats.items():
            print(f"   {collection}: {counts['missing_organization']} of {counts['total']} without organization")

    async def backfill_rooms(self, organization_id: str) -> int:
        missing = await self.db.rooms.count_documents(MISSING_ORGANIZATION)
        print(f"\n🔄 Rooms without organization: {missing}")
        if missing == 0:
            return 0

        if self.dry_run:
            print(f"   ⚠️  DRY RUN: Would assign {missing} rooms to {organization_id}")
            return missing

        result = await self.db.rooms.update_many(
            MISSING_ORGANIZATION,
            {"$set": {"organization_id": organization_id}},
        )
        print(f"   ✅ Updated {result.modified_count} rooms")
        return result.modified_count

    async def backfill_derived(self, organization_id: str) -> dict:
        """
        Copy each room's organization onto its sessions, messages and summaries.

        In dry-run mode rooms are not updated yet, so rooms without an
        organization are previewed as if assigned to the target.
        """
        updated = {collection: 0 for collection in DERIVED_COLLECTIONS}

        print("\n🔄 Deriving organization from rooms...")
        async for room in self.db.rooms.find({}, {"organization_id": 1}):
            room_org = room.get("organization_id") or organization_id
            scope = {"$and": [{"room_id": str(room["_id"])}, MISSING_ORGANIZATION]}

            for collection in DERIVED_COLLECTIONS:
                if self.dry_run:
                    updated[collection] += await self.db[collection].count_documents(scope)
                else:
                    result = await self.db[collection].update_many(
                        scope, {"$set": {"organization_id": room_org}}
                    )
                    updated[collection] += result.modified_count

        for collection, count in updated.items():
            verb = "Would update" if self.dry_run else "Updated"
            print(f"   {'⚠️  DRY RUN: ' if self.dry_run else '✅ '}{verb} {count} {collection}")
        return updated

    async def report_orphans(self) -> dict:
        """Documents still missing an organization after the backfill have no room."""
        room_ids = set()
        async for room in self.db.rooms.find({}, {"_id": 1}):
            room_ids.add(str(room["_id"]))

        orphans = {}
        for collection in DERIVED_COLLECTIONS:
            orphan_count = 0
            async for doc in self.db[collection].find(MISSING_ORGANIZATION, {"room_id": 1}):
                if doc.get("room_id") not in room_ids:
                    orphan_count += 1
            orphans[collection] = orphan_count

        print("\n🔍 Orphans (room missing, left untouched):")
        for collection, count in orphans.items():
            print(f"   {collection}: {count}")
        return orphans

    async def run(self):
        print("=" * 70)
        print("🗄️  MongoDB Backfill: organization_id on legacy documents")
        print("=" * 70)
        print(f"Mode: {'DRY RUN (preview only)' if self.dry_run else 'EXECUTE (applying changes)'}")
        print(f"Database: {self.database_name}")

        try:
            await self.connect()

            organization = await self.resolve_organization()
            organization_id = str(organization["_id"])
            print(f"\n🏢 Target organization: {organization.get('name')} ({organization.get('slug')}, {organization_id})")

            self.print_stats("Before", await self.get_stats())

            await self.backfill_rooms(organization_id)
            await self.backfill_derived(organization_id)
            await self.report_orphans()

            if not self.dry_run:
                self.print_stats("After", await self.get_stats())

            print("\n" + "=" * 70)
            if self.dry_run:
                print("⚠️  DRY RUN MODE - No changes were applied")
                print("Run with --execute to apply changes")
            else:
                print("✅ Backfill completed")
                print("\nNext steps:")
                print("1. Recount organization usage (current_groups) from the dashboard stats")
                print("2. Restart the service so caches are rebuilt")

        except Exception as e:
            print(f"\n❌ Backfill failed: {e}")
            raise
        finally:
            await self.close()


def main():
    parser = argparse.ArgumentParser(
        description="Assign an organization to legacy rooms, sessions, messages and summaries"
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--organization-id', help='Target organization _id')
    target.add_argument('--organization-slug', help='Target organization slug')

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview only (default)'
    )
    mode.add_argument(
        '--execute',
        action='store_true',
        help='Apply changes'
    )
    parser.add_argument(
        '--mongodb-url',
        default=os.getenv('MONGODB_URL', 'mongodb://localhost:27017'),
        help='MongoDB connection URL'
    )
    parser.add_argument(
        '--database',
        default=os.getenv('DATABASE_NAME', 'line_summarizer'),
        help='Database name'
    )

    args = parser.parse_args()

    backfill = OrganizationBackfill(
        mongodb_url=args.mongodb_url,
        database_name=args.database,
        organization_id=args.organization_id,
        organization_slug=args.organization_slug,
        dry_run=not args.execute,
    )

    asyncio.run(backfill.run())
    return 0


if __name__ == '__main__':
    sys.exit(main())
