"""Read-only lookups over the Deals, Agents and Agencies tables."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from agency_sms.datastore import CONNECTOR, match_formula, safe_all, safe_get
from agency_sms.errors import NotFoundError
from agency_sms.models import Agency, Agent, Deal
from agency_sms.runtime import get_logger, storage_phone
from agency_sms.schema import DEALS_TABLE, DealStatus

logger = get_logger(__name__)


class Directory:
    """Tenant data the engine consumes but never writes."""

    # Deals
    def get_deal(self, deal_id: str) -> Deal:
        record = safe_get(CONNECTOR.deals(), deal_id)
        if not record:
            raise NotFoundError("deal", deal_id)
        return Deal.from_record(record)

    def active_deals(self) -> List[Deal]:
        formula = match_formula({DEALS_TABLE.field_name("STATUS"): DealStatus.ACTIVE.value})
        return [Deal.from_record(r) for r in safe_all(CONNECTOR.deals(), formula=formula)]

    def find_deal_by_phone(self, agency_id: str, client_phone: str) -> Optional[Deal]:
        """First deal in the agency whose client phone matches."""
        phone = storage_phone(client_phone)
        if not phone:
            return None
        handle = CONNECTOR.deals()
        formula = match_formula(
            {
                DEALS_TABLE.field_name("AGENCY"): agency_id,
                DEALS_TABLE.field_name("CLIENT_PHONE"): phone,
            }
        )
        rows = safe_all(handle, formula=formula, max_records=1)
        if rows:
            return Deal.from_record(rows[0])

        # stored numbers are not always normalized; compare digit-wise
        agency_rows = safe_all(handle, formula=match_formula({DEALS_TABLE.field_name("AGENCY"): agency_id}))
        for row in agency_rows:
            deal = Deal.from_record(row)
            if deal.client_phone == phone:
                return deal
        return None

    # Agents
    def get_agent(self, agent_id: Optional[str]) -> Agent:
        record = safe_get(CONNECTOR.agents(), agent_id) if agent_id else None
        if not record:
            raise NotFoundError("agent", agent_id)
        return Agent.from_record(record)

    def agents_by_id(self, agent_ids: Iterable[str]) -> Dict[str, Agent]:
        wanted = {a for a in agent_ids if a}
        if not wanted:
            return {}
        return {
            r["id"]: Agent.from_record(r)
            for r in safe_all(CONNECTOR.agents())
            if r["id"] in wanted
        }

    # Agencies
    def get_agency(self, agency_id: str) -> Agency:
        record = safe_get(CONNECTOR.agencies(), agency_id)
        if not record:
            raise NotFoundError("agency", agency_id)
        return Agency.from_record(record)

    def agencies_by_id(self, agency_ids: Iterable[str]) -> Dict[str, Agency]:
        """Batch fetch: one table scan instead of one lookup per deal."""
        wanted = {a for a in agency_ids if a}
        if not wanted:
            return {}
        return {
            r["id"]: Agency.from_record(r)
            for r in safe_all(CONNECTOR.agencies())
            if r["id"] in wanted
        }

    def find_agency_by_phone(self, phone: str) -> Optional[Agency]:
        target = storage_phone(phone)
        if not target:
            return None
        for record in safe_all(CONNECTOR.agencies()):
            agency = Agency.from_record(record)
            if storage_phone(agency.phone) == target:
                return agency
        logger.info("No agency owns sending number %s", phone)
        return None
