"""
Segment membership.

Evaluates a segment's filters against the tenant's customers and applies the
difference to the stored membership. Removals, additions (with spend and RFM
snapshots) and the segment's cached stats are written in one transaction, so
a failed recompute leaves the previous membership intact.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from segmentflow.config import settings
from segmentflow.exceptions import NotFoundError, ValidationError
from segmentflow.models.customer import Customer
from segmentflow.models.segment import Segment, SegmentMember
from segmentflow.schemas.segment import FilterGroup, SegmentCreate, SegmentUpdate
from segmentflow.services.queue.job_queue import JobQueue
from segmentflow.services.queue.queues import enqueue_segment_update
from segmentflow.services.segments.filters import build_conditions, parse_filters, to_raw
from segmentflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under driver parameter limits
ID_CHUNK_SIZE = 500


def _chunks(items: Sequence[str], size: int = ID_CHUNK_SIZE):
    for i in range(0, len(items), size):
        yield items[i:i + size]


@dataclass
class Evaluation:
    customer_ids: List[str] = field(default_factory=list)
    total_count: int = 0
    total_spent: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SegmentComputeResult:
    segment_id: str
    previous_count: int
    new_count: int
    added: int
    removed: int
    estimated_revenue: Decimal
    duration_ms: int

    def to_dict(self) -> dict:
        return asdict(self)


class MembershipService:
    def __init__(self, db: AsyncSession, job_queue: Optional[JobQueue] = None):
        self.db = db
        self.job_queue = job_queue

    # ============================================
    # Evaluation
    # ============================================

    async def evaluate(self, tenant_id: str, filters: Any) -> Evaluation:
        """Customers of the tenant matching ``filters`` (raw dict or parsed group)."""
        group = filters if isinstance(filters, FilterGroup) else parse_filters(filters)
        rows = await self.db.execute(
            select(Customer.id, Customer.total_spent)
            .where(Customer.tenant_id == tenant_id, build_conditions(group))
            .order_by(Customer.id)
        )
        evaluation = Evaluation()
        for customer_id, total_spent in rows.all():
            evaluation.customer_ids.append(customer_id)
            evaluation.total_spent += Decimal(str(total_spent or 0))
        evaluation.total_count = len(evaluation.customer_ids)
        return evaluation

    async def preview(self, tenant_id: str, filters: Any, limit: int = 10) -> dict:
        """Count and sample of matching customers without touching membership."""
        group = parse_filters(filters)
        evaluation = await self.evaluate(tenant_id, group)
        sample = []
        if evaluation.customer_ids:
            sample = (
                await self.db.execute(
                    select(Customer)
                    .where(Customer.id.in_(evaluation.customer_ids[: limit * 5]))
                    .order_by(Customer.total_spent.desc(), Customer.id)
                    .limit(limit)
                )
            ).scalars().all()
        return {
            "total_count": evaluation.total_count,
            "total_spent": evaluation.total_spent,
            "sample": list(sample),
        }

    async def compute_membership(self, segment_id: str) -> SegmentComputeResult:
        started = time.monotonic()
        segment = await self.db.get(Segment, segment_id)
        if segment is None:
            raise NotFoundError("Segment", segment_id)

        logger.info(f"Computing membership for segment {segment_id} (tenant {segment.tenant_id})")
        previous_count = segment.customer_count or 0

        try:
            evaluation = await self.evaluate(segment.tenant_id, segment.filters)
            previous_ids = set(
                (
                    await self.db.execute(
                        select(SegmentMember.customer_id).where(SegmentMember.segment_id == segment_id)
                    )
                ).scalars().all()
            )
            current_ids = set(evaluation.customer_ids)
            added = sorted(current_ids - previous_ids)
            removed = sorted(previous_ids - current_ids)

            for chunk in _chunks(removed):
                await self.db.execute(
                    delete(SegmentMember).where(
                        SegmentMember.segment_id == segment_id,
                        SegmentMember.customer_id.in_(chunk),
                    )
                )

            for chunk in _chunks(added):
                snapshots = await self.db.execute(
                    select(Customer.id, Customer.total_spent, Customer.rfm_segment).where(Customer.id.in_(chunk))
                )
                self.db.add_all(
                    SegmentMember(
                        segment_id=segment_id,
                        customer_id=customer_id,
                        total_spent_snapshot=total_spent or 0,
                        rfm_segment_snapshot=rfm_segment,
                    )
                    for customer_id, total_spent, rfm_segment in snapshots.all()
                )

            segment.customer_count = evaluation.total_count
            segment.estimated_revenue = evaluation.total_spent
            segment.last_computed_at = utcnow()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        result = SegmentComputeResult(
            segment_id=segment_id,
            previous_count=previous_count,
            new_count=evaluation.total_count,
            added=len(added),
            removed=len(removed),
            estimated_revenue=evaluation.total_spent,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(f"Segment membership computed: {result.to_dict()}")
        return result

    async def refresh_all_segments(
        self,
        tenant_id: str,
        delay_ms: Optional[int] = None,
        reason: str = "refresh",
        priority: Optional[int] = None,
    ) -> List[str]:
        """
        Queue a recompute for every active segment of the tenant.

        The n-th segment is delayed by ``n * delay_ms`` so a tenant-wide
        refresh does not start every recompute at once.
        """
        if self.job_queue is None:
            raise RuntimeError("refresh_all_segments needs a job queue")
        step = settings.SEGMENT_REFRESH_DELAY_MS if delay_ms is None else delay_ms

        segment_ids = (
            await self.db.execute(
                select(Segment.id)
                .where(Segment.tenant_id == tenant_id, Segment.is_active.is_(True))
                .order_by(Segment.created_at, Segment.id)
            )
        ).scalars().all()

        job_ids = []
        for i, segment_id in enumerate(segment_ids):
            job_ids.append(
                await enqueue_segment_update(
                    self.job_queue, tenant_id, segment_id, reason, delay_ms=i * step, priority=priority
                )
            )
        logger.info(f"Queued refresh of {len(job_ids)} segments for tenant {tenant_id}")
        return job_ids

    # ============================================
    # CRUD
    # ============================================

    async def create_segment(self, tenant_id: str, data: SegmentCreate) -> Segment:
        group = parse_filters(data.filters)
        segment = Segment(
            tenant_id=tenant_id,
            name=data.name,
            description=data.description,
            filters=to_raw(group),
            is_active=data.is_active,
            created_by=data.created_by,
        )
        self.db.add(segment)
        await self.db.commit()
        await self.db.refresh(segment)
        logger.info(f"Segment created: {segment.id} ({segment.name}) for tenant {tenant_id}")
        return segment

    async def update_segment(self, tenant_id: str, segment_id: str, data: SegmentUpdate) -> Tuple[Segment, bool]:
        """
        Apply a partial update. Returns the segment and whether its filters
        changed; a change needs a recompute, which the caller enqueues.
        """
        segment = await self._get_or_404(tenant_id, segment_id)
        changes = data.model_dump(exclude_unset=True)

        filters_changed = False
        if changes.get("filters") is not None:
            normalized = to_raw(parse_filters(changes.pop("filters")))
            filters_changed = normalized != segment.filters
            segment.filters = normalized
        changes.pop("filters", None)

        for key, value in changes.items():
            if value is None and key != "description":
                continue
            setattr(segment, key, value)

        await self.db.commit()
        await self.db.refresh(segment)
        return segment, filters_changed

    async def delete_segment(self, tenant_id: str, segment_id: str) -> None:
        segment = await self._get_or_404(tenant_id, segment_id)
        await self.db.execute(delete(SegmentMember).where(SegmentMember.segment_id == segment_id))
        await self.db.delete(segment)
        await self.db.commit()
        logger.info(f"Segment deleted: {segment_id} for tenant {tenant_id}")

    async def get_segment(self, tenant_id: str, segment_id: str) -> Optional[Segment]:
        result = await self.db.execute(
            select(Segment).where(Segment.id == segment_id, Segment.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def _get_or_404(self, tenant_id: str, segment_id: str) -> Segment:
        segment = await self.get_segment(tenant_id, segment_id)
        if segment is None:
            raise NotFoundError("Segment", segment_id)
        return segment

    async def list_segments(
        self,
        tenant_id: str,
        is_active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> dict:
        sort_columns = {
            "name": Segment.name,
            "customer_count": Segment.customer_count,
            "created_at": Segment.created_at,
        }
        column = sort_columns.get(sort_by, Segment.created_at)

        where = [Segment.tenant_id == tenant_id]
        if is_active is not None:
            where.append(Segment.is_active.is_(is_active))

        total = (await self.db.execute(select(func.count(Segment.id)).where(*where))).scalar() or 0
        segments = (
            await self.db.execute(
                select(Segment)
                .where(*where)
                .order_by(column.desc() if descending else column.asc(), Segment.id)
                .limit(limit)
                .offset(offset)
            )
        ).scalars().all()
        return {"segments": list(segments), "total": total}

    # ============================================
    # Membership queries
    # ============================================

    async def get_segment_members(
        self,
        segment_id: str,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "added_at",
        descending: bool = True,
    ) -> dict:
        column = (
            SegmentMember.total_spent_snapshot if sort_by == "total_spent_snapshot" else SegmentMember.added_at
        )
        total = (
            await self.db.execute(
                select(func.count(SegmentMember.id)).where(SegmentMember.segment_id == segment_id)
            )
        ).scalar() or 0

        rows = await self.db.execute(
            select(SegmentMember, Customer)
            .join(Customer, Customer.id == SegmentMember.customer_id)
            .where(SegmentMember.segment_id == segment_id)
            .order_by(column.desc() if descending else column.asc(), SegmentMember.customer_id)
            .limit(limit)
            .offset(offset)
        )
        members = [
            {
                "id": member.id,
                "added_at": member.added_at,
                "total_spent_snapshot": member.total_spent_snapshot,
                "rfm_segment_snapshot": member.rfm_segment_snapshot,
                "customer": {
                    "id": customer.id,
                    "email": customer.email,
                    "first_name": customer.first_name,
                    "last_name": customer.last_name,
                    "total_spent": customer.total_spent,
                    "orders_count": customer.orders_count,
                    "rfm_segment": customer.rfm_segment,
                },
            }
            for member, customer in rows.all()
        ]
        return {"members": members, "total": total}

    async def is_customer_in_segment(self, customer_id: str, segment_id: str) -> bool:
        result = await self.db.execute(
            select(SegmentMember.id).where(
                SegmentMember.segment_id == segment_id, SegmentMember.customer_id == customer_id
            )
        )
        return result.scalar_one_or_none() is not None

    async def get_customer_segments(self, customer_id: str) -> List[Dict[str, str]]:
        rows = await self.db.execute(
            select(Segment.id, Segment.name)
            .join(SegmentMember, SegmentMember.segment_id == Segment.id)
            .where(SegmentMember.customer_id == customer_id)
            .order_by(Segment.name)
        )
        return [{"id": segment_id, "name": name} for segment_id, name in rows.all()]

    async def get_segment_overlap(self, tenant_id: str, segment_ids: List[str]) -> dict:
        """Pairwise count of customers shared by the given segments."""
        if len(segment_ids) < 2:
            raise ValidationError("At least 2 segments required for overlap analysis")

        segments = (
            await self.db.execute(
                select(Segment.id, Segment.name, Segment.customer_count).where(
                    Segment.id.in_(segment_ids), Segment.tenant_id == tenant_id
                )
            )
        ).all()
        known = {row.id for row in segments}
        missing = [s for s in segment_ids if s not in known]
        if missing:
            raise NotFoundError("Segment", missing[0])

        first, second = aliased(SegmentMember), aliased(SegmentMember)
        overlaps = []
        for i, left in enumerate(segment_ids):
            for right in segment_ids[i + 1:]:
                count = (
                    await self.db.execute(
                        select(func.count())
                        .select_from(first)
                        .join(second, first.customer_id == second.customer_id)
                        .where(first.segment_id == left, second.segment_id == right)
                    )
                ).scalar() or 0
                overlaps.append({"segment_pair": [left, right], "count": count})

        return {
            "segments": [{"id": s.id, "name": s.name, "count": s.customer_count} for s in segments],
            "overlaps": overlaps,
        }
