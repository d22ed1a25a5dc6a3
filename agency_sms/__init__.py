"""
📨 Agency SMS Engine
--------------------
Conversation and automated-message lifecycle for insurance agencies:
conversations, the message log, daily triggers, the draft approval queue
and the Telnyx transport.
"""

from agency_sms.config import settings

__all__ = ["settings"]
