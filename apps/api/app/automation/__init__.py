from app.automation.engine import AutomationEngine, automation_engine
from app.automation.models import CRMAutomationLog, CRMDealAutomation, CRMStageAutomation

__all__ = [
    "AutomationEngine",
    "automation_engine",
    "CRMAutomationLog",
    "CRMDealAutomation",
    "CRMStageAutomation",
]
