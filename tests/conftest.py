import os
import sys
from datetime import date
from typing import Any, Dict, List, Optional

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from agency_sms.config import settings
from agency_sms.datastore import CONNECTOR, reset_state
from agency_sms.engine import Engine, reset_engine, set_engine
from agency_sms.errors import DispatchError
from agency_sms.idempotency import MemoryClaimStore
from agency_sms.schema import (
    AGENCIES_TABLE,
    AGENTS_TABLE,
    DEALS_TABLE,
    TriggerType,
    trigger_field,
)


@pytest.fixture(autouse=True)
def _reset_datastore():
    for key in [
        "AIRTABLE_API_KEY",
        "AIRTABLE_BASE_ID",
        "REDIS_URL",
        "UPSTASH_REDIS_URL",
        "TELNYX_API_KEY",
        "CRON_TOKEN",
        "WEBHOOK_TOKEN",
        "TELNYX_WEBHOOK_TOKEN",
        "ALERT_WEBHOOK_URL",
        "AUTO_OPT_IN_NEW_CONVERSATIONS",
    ]:
        os.environ.pop(key, None)
    os.environ["SMS_FORCE_IN_MEMORY"] = "1"
    settings.cache_clear()
    reset_state()
    reset_engine()
    yield
    reset_engine()
    settings.cache_clear()


class StubDispatcher:
    """Records sends instead of calling the carrier."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    def send(self, from_number, to, text):
        if self.fail:
            raise DispatchError("Telnyx HTTP 500: upstream down", status_code=500)
        self.sent.append({"from": from_number, "to": to, "text": text})
        return {"provider_id": f"msg_{len(self.sent)}", "status": "queued"}


class StubNotifier:
    def __init__(self):
        self.alerts: List[str] = []

    def notify(self, text):
        self.alerts.append(text)
        return None


@pytest.fixture
def dispatcher():
    return StubDispatcher()


@pytest.fixture
def notifier():
    return StubNotifier()


@pytest.fixture
def engine(dispatcher, notifier):
    built = Engine(claims=MemoryClaimStore(), dispatcher=dispatcher, notifier=notifier)
    set_engine(built)
    return built


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


def make_agency(
    name: str = "Acme Insurance",
    phone: str = "+15550001111",
    *,
    messaging: bool = True,
    auto_send: bool = True,
    enabled: Optional[List[TriggerType]] = None,
    templates: Optional[Dict[TriggerType, str]] = None,
    require_approval: Optional[List[TriggerType]] = None,
) -> str:
    names = AGENCIES_TABLE.field_names()
    fields: Dict[str, Any] = {
        names["NAME"]: name,
        names["PHONE"]: phone,
        names["MESSAGING_ENABLED"]: messaging,
        names["AUTO_SEND_ENABLED"]: auto_send,
    }
    for trigger in enabled if enabled is not None else list(TriggerType):
        fields[trigger_field(trigger, "ENABLED")] = True
    for trigger, template in (templates or {}).items():
        fields[trigger_field(trigger, "TEMPLATE")] = template
    for trigger in require_approval or []:
        fields[trigger_field(trigger, "REQUIRE_APPROVAL")] = True
    return CONNECTOR.agencies().table.create(fields)["id"]


def make_agent(
    agency_id: str,
    *,
    first: str = "Sam",
    last: str = "Agent",
    phone: Optional[str] = "+15550002222",
    tier: str = "pro",
    override: str = "inherit",
) -> str:
    names = AGENTS_TABLE.field_names()
    return CONNECTOR.agents().table.create(
        {
            names["AGENCY"]: agency_id,
            names["FIRST_NAME"]: first,
            names["LAST_NAME"]: last,
            names["PHONE"]: phone,
            names["TIER"]: tier,
            names["AUTO_SEND_OVERRIDE"]: override,
        }
    )["id"]


def make_deal(
    agency_id: str,
    agent_id: Optional[str],
    *,
    client_name: str = "Jane Client",
    phone: Optional[str] = "5551234567",
    email: Optional[str] = "jane@example.com",
    dob: Optional[date] = None,
    effective: Optional[date] = None,
    cycle: Optional[str] = None,
    status: str = "active",
) -> str:
    names = DEALS_TABLE.field_names()
    return CONNECTOR.deals().table.create(
        {
            names["AGENCY"]: agency_id,
            names["AGENT"]: agent_id,
            names["CLIENT_NAME"]: client_name,
            names["CLIENT_PHONE"]: phone,
            names["CLIENT_EMAIL"]: email,
            names["DATE_OF_BIRTH"]: dob.isoformat() if dob else None,
            names["EFFECTIVE_DATE"]: effective.isoformat() if effective else None,
            names["BILLING_CYCLE"]: cycle,
            names["STATUS"]: status,
        }
    )["id"]
