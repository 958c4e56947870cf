"""
Redis side of project assignments.

Subjects are AI-generated threat analyses written by the generation workflow
under ``subject:<id>:<field>`` scalar keys. This store only reads them,
except for ``subject:<id>:threatCount`` which it fills lazily. Assignments
live in ``project:<pid>:subjects`` (set) and ``project:<pid>:subject:<id>``
(hash).
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from aws_lambda_powertools import Logger
from models.assignment import AssignmentRecord, AssignmentSource
from redis.exceptions import RedisError

LOG = Logger(serialize_stacktrace=False)

THREAT_HEADING_PATTERN = re.compile(r"## Threat:([^#]+)")
GENERIC_HEADING_PATTERN = re.compile(r"## ([^#\n]+)")
NON_THREAT_HEADINGS = frozenset(
    ["Overview", "Introduction", "Summary", "Conclusion", "Background"]
)


def compute_threat_count(response_text: Optional[str]) -> int:
    """
    Count threats in a generated analysis.

    "## Threat: <name>" headings win; when there are none, every other
    level-2 heading outside NON_THREAT_HEADINGS counts as one threat.
    """
    if not response_text:
        return 0

    matches = [m.strip() for m in THREAT_HEADING_PATTERN.findall(response_text)]
    if matches:
        return len(matches)

    return sum(
        1
        for heading in GENERIC_HEADING_PATTERN.findall(response_text)
        if heading.strip() not in NON_THREAT_HEADINGS
    )


JS_DATE_FORMAT = "%a %b %d %Y %H:%M:%S GMT%z"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a timestamp written by the generation workflow.

    Accepts ISO 8601 and the JavaScript ``Date.toString()`` form
    ("Tue May 01 2025 10:00:00 GMT+0000 (Coordinated Universal Time)").
    Anything else yields None.
    """
    if not value:
        return None

    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass

    try:
        return datetime.strptime(value.split(" (")[0].strip(), JS_DATE_FORMAT)
    except ValueError:
        LOG.warning(f"Unparseable subject timestamp: {value!r}")
        return None


def subject_key(subject_id: str, field: str) -> str:
    return f"subject:{subject_id}:{field}"


def project_subjects_key(project_id: Any) -> str:
    return f"project:{project_id}:subjects"


def assignment_key(project_id: Any, subject_id: str) -> str:
    return f"project:{project_id}:subject:{subject_id}"


class SubjectStore:
    def __init__(self, redis_client):
        self.redis = redis_client

    async def get_title(self, subject_id: str) -> Optional[str]:
        return await self.redis.get(subject_key(subject_id, "title"))

    async def get_model(self, subject_id: str) -> str:
        return await self.redis.get(subject_key(subject_id, "model")) or "Unknown"

    async def get_created_at(self, subject_id: str) -> str:
        created_at = await self.redis.get(subject_key(subject_id, "createdAt"))
        return created_at or datetime.now(timezone.utc).isoformat()

    async def get_threat_count(self, subject_id: str) -> int:
        """Return the cached threat count, computing and caching it on first use."""
        cached = await self.redis.get(subject_key(subject_id, "threatCount"))
        if cached is not None:
            try:
                return int(cached)
            except ValueError:
                return 0

        response_text = await self.redis.get(subject_key(subject_id, "response"))
        if not response_text:
            return 0

        threat_count = compute_threat_count(response_text)
        LOG.info(f"Calculated threat count for subject {subject_id}: {threat_count}")
        # No TTL: response text is immutable
        await self.redis.set(subject_key(subject_id, "threatCount"), str(threat_count))
        return threat_count

    async def list_subject_ids(self, project_id: Any) -> List[str]:
        members = await self.redis.smembers(project_subjects_key(project_id))
        return sorted(members or [])

    async def get_assignment(self, project_id: Any, subject_id: str) -> Dict[str, str]:
        return await self.redis.hgetall(assignment_key(project_id, subject_id)) or {}

    async def get_record(self, project_id: Any, subject_id: str) -> Optional[AssignmentRecord]:
        """
        Resolve an assigned subject to a display record.

        Returns None when the subject's title is gone, i.e. the subject was
        deleted and the assignment is orphaned.
        """
        title = await self.get_title(subject_id)
        if not title:
            return None

        created_at = parse_timestamp(await self.get_created_at(subject_id))
        assignment = await self.get_assignment(project_id, subject_id)

        return AssignmentRecord(
            id=subject_id,
            title=title,
            source=AssignmentSource.EPHEMERAL,
            created_at=created_at,
            threat_count=await self.get_threat_count(subject_id),
            model=await self.get_model(subject_id),
            assigned_by=assignment.get("assigned_by") or "Unknown",
            assigned_at=parse_timestamp(assignment.get("assigned_at")) or created_at,
        )

    async def assign_batch(
        self, project_id: Any, subject_ids: Sequence[str], assigned_by: str
    ) -> List[str]:
        """
        Write all subject assignments in one MULTI/EXEC pipeline.

        A transport failure mid-pipeline may leave some entries applied.
        """
        if not subject_ids:
            return []

        now = datetime.now(timezone.utc).isoformat()
        async with self.redis.pipeline(transaction=True) as pipe:
            for subject_id in subject_ids:
                pipe.hset(
                    assignment_key(project_id, subject_id),
                    mapping={
                        "project_id": str(project_id),
                        "subject_id": subject_id,
                        "assigned_by": assigned_by,
                        "assigned_at": now,
                    },
                )
                pipe.sadd(project_subjects_key(project_id), subject_id)
            await pipe.execute()

        LOG.info(f"Successfully assigned {len(subject_ids)} subjects to project {project_id}")
        return list(subject_ids)

    async def remove(self, project_id: Any, subject_id: str) -> bool:
        key = assignment_key(project_id, subject_id)
        if not await self.redis.exists(key):
            return False

        await self.redis.delete(key)
        await self.redis.srem(project_subjects_key(project_id), subject_id)
        return True

    async def refresh_threat_counts(self) -> Dict[str, int]:
        """
        Recompute the cached threat count of every subject.

        Returns:
            Dict with updated, skipped and errors counters
        """
        summary = {"updated": 0, "skipped": 0, "errors": 0}

        async for key in self.redis.scan_iter(match="subject:*:title"):
            subject_id = key.split(":")[1]
            try:
                response_text = await self.redis.get(subject_key(subject_id, "response"))
                if not response_text:
                    LOG.info(f"No response found for subject {subject_id}, skipping")
                    summary["skipped"] += 1
                    continue

                threat_count = compute_threat_count(response_text)
                previous = await self.redis.get(subject_key(subject_id, "threatCount"))
                await self.redis.set(
                    subject_key(subject_id, "threatCount"), str(threat_count)
                )
                LOG.info(
                    f"Updated subject {subject_id}: {previous or 'none'} -> {threat_count} threats"
                )
                summary["updated"] += 1
            except RedisError as e:
                LOG.error(f"Error processing subject {subject_id}: {e}")
                summary["errors"] += 1

        return summary
