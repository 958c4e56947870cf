"""
Assignment of threat models and AI-generated subjects to projects.

Threat models live in PostgreSQL, subjects in Redis. This service classifies
incoming references once, writes each bucket to its own store and evicts the
project's cached listings before returning, so a caller never reads its own
write from a stale cache.

Writes happen in two explicit phases: the relational transaction is
committed first, then the subject pipeline runs. A relational failure
therefore never leaves subject assignments behind, but a subject pipeline
failure after the commit leaves the relational half in place. Those subject
IDs are logged and left out of the result; nothing reconciles them.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from aws_lambda_powertools import Logger, Tracer
from config import (
    PROJECT_EXISTS_CACHE_TTL,
    SUBJECT_ID_PREFIX,
    THREAT_MODELS_CACHE_TTL,
)
from exceptions.exceptions import InternalError, NotFoundError, ValidationError
from models.assignment import AssignmentRecord, RelationalId
from pydantic import ValidationError as RecordValidationError
from redis.exceptions import RedisError
from services.cache_service import (
    CacheService,
    project_count_key,
    project_exists_key,
    threat_models_key,
    threat_models_pattern,
)
from services.identifier_service import (
    classify_id,
    is_integer_like,
    is_uuid,
    split_ids,
)
from services.relational_store import RelationalAssignmentStore
from services.subject_store import SubjectStore
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

LOG = Logger(serialize_stacktrace=False)
tracer = Tracer()


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def normalize_project_id(project_id: Any) -> Any:
    """Numeric project IDs are sent to PostgreSQL as integers, anything else as text."""
    if isinstance(project_id, str):
        project_id = project_id.strip()
        if not is_uuid(project_id) and is_integer_like(project_id):
            return int(project_id)
    return project_id


class AssignmentService:
    def __init__(
        self,
        engine: AsyncEngine,
        relational_store: RelationalAssignmentStore,
        subject_store: SubjectStore,
        cache: CacheService,
        subject_prefix: str = SUBJECT_ID_PREFIX,
        list_ttl: int = THREAT_MODELS_CACHE_TTL,
        exists_ttl: int = PROJECT_EXISTS_CACHE_TTL,
    ):
        self.engine = engine
        self.relational_store = relational_store
        self.subject_store = subject_store
        self.cache = cache
        self.subject_prefix = subject_prefix
        self.list_ttl = list_ttl
        self.exists_ttl = exists_ttl

    @tracer.capture_method
    async def get_threat_models_for_project(
        self, project_id: Any, filters: Optional[Dict[str, Any]] = None
    ) -> List[AssignmentRecord]:
        """
        List everything assigned to a project, newest first.

        Args:
            project_id: The project ID
            filters: Optional {"status": str}, applied to relational threat models

        Returns:
            Relational and subject records merged and sorted by creation time

        Raises:
            ValidationError: If project_id is missing
        """
        if _is_missing(project_id):
            raise ValidationError("Project ID is required")

        project_id = normalize_project_id(project_id)
        status = (filters or {}).get("status")
        cache_key = threat_models_key(project_id, status)

        cached = await self._read_cached_records(cache_key)
        if cached is not None:
            LOG.info(f"Cache hit for {cache_key}")
            return cached

        LOG.info(f"Cache miss for {cache_key}, querying PostgreSQL and Redis")
        try:
            async with self.engine.connect() as conn:
                relational = await self.relational_store.list_for_project(
                    conn, project_id, status
                )

            subjects = []
            for subject_id in await self.subject_store.list_subject_ids(project_id):
                record = await self.subject_store.get_record(project_id, subject_id)
                if record is None:
                    continue
                subjects.append(record)
        except (SQLAlchemyError, RedisError) as e:
            LOG.error(f"Error getting threat models for project {project_id}: {e}")
            raise InternalError(str(e))

        # sorted() is stable, so equal timestamps keep relational-then-subject order
        records = sorted(
            relational + subjects, key=lambda record: record.sort_key(), reverse=True
        )

        await self.cache.set(
            cache_key,
            json.dumps([r.model_dump(mode="json", by_alias=True) for r in records]),
            self.list_ttl,
        )
        return records

    @tracer.capture_method
    async def assign_threat_models_to_project(
        self, project_id: Any, threat_model_ids: Sequence[Any], assigned_by: str
    ) -> List[Any]:
        """
        Assign threat models and subjects to a project.

        Args:
            project_id: The project receiving the assignments
            threat_model_ids: Mixed references (UUIDs, numbers, "subj-" prefixed IDs)
            assigned_by: User making the assignment

        Returns:
            Newly assigned relational IDs followed by the subject IDs written

        Raises:
            ValidationError: On missing input or when nothing is left to assign
            NotFoundError: If the project doesn't exist
        """
        if (
            _is_missing(project_id)
            or not isinstance(threat_model_ids, (list, tuple))
            or len(threat_model_ids) == 0
        ):
            raise ValidationError("Invalid input parameters")

        project_id = normalize_project_id(project_id)

        if not await self._project_exists(project_id):
            raise NotFoundError(f"Project with ID {project_id} not found")

        relational_ids, subject_ids = split_ids(
            threat_model_ids, project_id, self.subject_prefix
        )
        if not relational_ids and not subject_ids:
            LOG.error("No threat models provided for assignment")
            raise ValidationError("No threat models provided for assignment")

        inserted = await self._assign_relational(project_id, relational_ids, assigned_by)
        inserted.extend(await self._assign_subjects(project_id, subject_ids, assigned_by))

        await self._invalidate_project(project_id)
        LOG.info(f"Assigned {len(inserted)} threat models to project {project_id}")
        return inserted

    @tracer.capture_method
    async def remove_threat_model_from_project(
        self, project_id: Any, threat_model_id: Any
    ) -> bool:
        """
        Remove a single assignment.

        Returns:
            True if the assignment existed, False otherwise

        Raises:
            ValidationError: If either ID is missing
        """
        if _is_missing(project_id) or _is_missing(threat_model_id):
            raise ValidationError("Project ID and threat model ID are required")

        project_id = normalize_project_id(project_id)
        classified = classify_id(threat_model_id, project_id, self.subject_prefix)

        try:
            if isinstance(classified, RelationalId):
                async with self.engine.begin() as conn:
                    return await self.relational_store.remove(
                        conn, project_id, classified.value
                    )
            return await self.subject_store.remove(project_id, classified.value)
        except (SQLAlchemyError, RedisError) as e:
            LOG.error(f"Error removing threat model from project {project_id}: {e}")
            raise InternalError(str(e))
        finally:
            await self._invalidate_project(project_id)

    async def clear_project_cache(self, project_id: Any) -> int:
        """Evict the project's cached listings; returns the number of keys removed."""
        if _is_missing(project_id):
            raise ValidationError("Project ID is required")
        return await self._invalidate_project(normalize_project_id(project_id))

    async def _read_cached_records(self, cache_key: str) -> Optional[List[AssignmentRecord]]:
        cached = await self.cache.get(cache_key)
        if not cached:
            return None
        try:
            return [AssignmentRecord.model_validate(item) for item in json.loads(cached)]
        except (ValueError, TypeError, RecordValidationError) as e:
            LOG.warning(f"Discarding unreadable cache entry {cache_key}: {e}")
            return None

    async def _project_exists(self, project_id: Any) -> bool:
        cache_key = project_exists_key(project_id)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return cached == "1"

        try:
            async with self.engine.connect() as conn:
                exists = await self.relational_store.project_exists(conn, project_id)
        except SQLAlchemyError as e:
            LOG.error(f"Error checking project {project_id}: {e}")
            raise InternalError(str(e))

        await self.cache.set(cache_key, "1" if exists else "0", self.exists_ttl)
        return exists

    async def _assign_relational(
        self, project_id: Any, threat_model_ids: List[Any], assigned_by: str
    ) -> List[Any]:
        """
        Phase one: verify and insert relational IDs in a single transaction.

        Unknown IDs and a failed batch insert are partial failures: logged,
        never raised. Only a failure to open or commit the transaction is.
        """
        if not threat_model_ids:
            return []

        try:
            async with self.engine.begin() as conn:
                to_insert = await self._verified_threat_models(conn, threat_model_ids)
                if not to_insert:
                    return []
                try:
                    # Savepoint keeps a failed insert from aborting the transaction
                    async with conn.begin_nested():
                        return await self.relational_store.assign_batch(
                            conn, project_id, to_insert, assigned_by
                        )
                except SQLAlchemyError as e:
                    LOG.warning(
                        f"Error batch inserting threat models for project {project_id}: {e}"
                    )
                    return []
        except SQLAlchemyError as e:
            LOG.error(f"Relational assignment failed for project {project_id}: {e}")
            raise InternalError(str(e))

    async def _verified_threat_models(self, conn, threat_model_ids: List[Any]) -> List[Any]:
        try:
            async with conn.begin_nested():
                found = await self.relational_store.existing_threat_models(
                    conn, threat_model_ids
                )
        except SQLAlchemyError as e:
            LOG.warning(f"Error verifying threat models, inserting unverified: {e}")
            return list(threat_model_ids)

        found_keys = {str(value).lower() for value in found}
        missing = [v for v in threat_model_ids if str(v).lower() not in found_keys]
        if missing:
            LOG.warning(
                f"Some threat models not found: {', '.join(str(v) for v in missing)}"
            )
        return [v for v in threat_model_ids if str(v).lower() in found_keys]

    async def _assign_subjects(
        self, project_id: Any, subject_ids: List[str], assigned_by: str
    ) -> List[str]:
        """Phase two: pipeline subject assignments after the relational commit."""
        if not subject_ids:
            return []

        LOG.info(f"Batch processing {len(subject_ids)} subjects")
        try:
            return await self.subject_store.assign_batch(project_id, subject_ids, assigned_by)
        except RedisError as e:
            LOG.error(f"Error assigning subjects to project {project_id}: {e}")
            return []

    async def _invalidate_project(self, project_id: Any) -> int:
        return await self.cache.invalidate_pattern(
            threat_models_pattern(project_id), extra_keys=[project_count_key(project_id)]
        )
