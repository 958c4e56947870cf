"""
PostgreSQL side of project assignments.

Every method runs on a connection supplied by the caller, which owns the
transaction boundaries. This store never begins, commits or rolls back
anything itself.
"""

import uuid
from typing import Any, Dict, List, Optional, Sequence

from aws_lambda_powertools import Logger
from config import DB_SCHEMA
from models.assignment import AssignmentRecord, AssignmentSource
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection

LOG = Logger(serialize_stacktrace=False)

RECORD_COLUMNS = ("id", "title", "created_at", "assigned_by", "assigned_at")


def normalize_db_id(value: Any) -> Any:
    """asyncpg returns uuid.UUID for UUID columns; callers deal in strings."""
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def row_to_record(row: Dict[str, Any]) -> AssignmentRecord:
    extras = {
        key: normalize_db_id(value)
        for key, value in row.items()
        if key not in RECORD_COLUMNS
    }
    return AssignmentRecord(
        id=normalize_db_id(row["id"]),
        title=row.get("title") or row.get("name"),
        source=AssignmentSource.RELATIONAL,
        created_at=row.get("created_at"),
        assigned_by=row.get("assigned_by"),
        assigned_at=row.get("assigned_at"),
        **extras,
    )


class RelationalAssignmentStore:
    def __init__(self, schema: str = DB_SCHEMA):
        self.schema = schema

    @property
    def projects_table(self) -> str:
        return f"{self.schema}.projects"

    @property
    def threat_models_table(self) -> str:
        return f"{self.schema}.threat_models"

    @property
    def assignments_table(self) -> str:
        return f"{self.schema}.project_threat_models"

    async def project_exists(self, conn: AsyncConnection, project_id: Any) -> bool:
        result = await conn.execute(
            text(f"SELECT id FROM {self.projects_table} WHERE id = :project_id"),
            {"project_id": project_id},
        )
        return result.first() is not None

    async def existing_threat_models(
        self, conn: AsyncConnection, threat_model_ids: Sequence[Any]
    ) -> List[Any]:
        """Return the subset of ``threat_model_ids`` present in the threat model table."""
        if not threat_model_ids:
            return []

        query = text(
            f"SELECT id FROM {self.threat_models_table} WHERE id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        result = await conn.execute(query, {"ids": list(threat_model_ids)})
        return [normalize_db_id(row[0]) for row in result.fetchall()]

    async def assign_batch(
        self,
        conn: AsyncConnection,
        project_id: Any,
        threat_model_ids: Sequence[Any],
        assigned_by: str,
    ) -> List[Any]:
        """
        Insert all assignments in one statement.

        Args:
            conn: Connection inside the caller's transaction
            project_id: The project receiving the threat models
            threat_model_ids: Relational threat model IDs
            assigned_by: User performing the assignment

        Returns:
            IDs that were newly assigned; existing assignments are skipped
        """
        if not threat_model_ids:
            return []

        params = {"project_id": project_id, "assigned_by": assigned_by}
        values = []
        for index, threat_model_id in enumerate(threat_model_ids):
            params[f"tm_{index}"] = threat_model_id
            values.append(f"(:project_id, :tm_{index}, :assigned_by)")

        query = text(
            f"""
            INSERT INTO {self.assignments_table} (project_id, threat_model_id, assigned_by)
            VALUES {", ".join(values)}
            ON CONFLICT (project_id, threat_model_id) DO NOTHING
            RETURNING threat_model_id
            """
        )
        LOG.info(f"Batch inserting {len(threat_model_ids)} threat models")
        result = await conn.execute(query, params)
        inserted = [normalize_db_id(row[0]) for row in result.fetchall()]
        LOG.info(f"Successfully inserted {len(inserted)} threat models")
        return inserted

    async def remove(
        self, conn: AsyncConnection, project_id: Any, threat_model_id: Any
    ) -> bool:
        result = await conn.execute(
            text(
                f"""
                DELETE FROM {self.assignments_table}
                WHERE project_id = :project_id AND threat_model_id = :threat_model_id
                RETURNING threat_model_id
                """
            ),
            {"project_id": project_id, "threat_model_id": threat_model_id},
        )
        return len(result.fetchall()) > 0

    async def list_for_project(
        self, conn: AsyncConnection, project_id: Any, status: Optional[str] = None
    ) -> List[AssignmentRecord]:
        params = {"project_id": project_id}
        status_clause = ""
        if status:
            status_clause = "AND tm.status = :status"
            params["status"] = status

        result = await conn.execute(
            text(
                f"""
                SELECT tm.*, ptm.assigned_by, ptm.assigned_at, ptm.notes
                FROM {self.threat_models_table} tm
                JOIN {self.assignments_table} ptm ON tm.id = ptm.threat_model_id
                WHERE ptm.project_id = :project_id
                {status_clause}
                ORDER BY tm.created_at DESC
                """
            ),
            params,
        )
        return [row_to_record(dict(row)) for row in result.mappings().all()]
