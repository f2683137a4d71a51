from campaigns.orchestrator import CampaignOrchestrator

__all__ = ["CampaignOrchestrator"]
