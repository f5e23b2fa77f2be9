"""Headless Mingle participant: relay client and peer mesh negotiation."""
