"""Hoodie Academy XP award and leveling service."""
