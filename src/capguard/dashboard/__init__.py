"""HTTP approval channel for capguard."""

from .api import HttpApprovalChannel, create_dashboard_app

__all__ = ["HttpApprovalChannel", "create_dashboard_app"]
