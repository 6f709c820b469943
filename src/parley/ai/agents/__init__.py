"""Agents built on the conversation runner."""
