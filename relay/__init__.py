"""Telegram relay for agent permission and question requests."""
