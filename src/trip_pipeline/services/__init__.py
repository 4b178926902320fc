"""
Services package: provider clients, routing, budget control, state storage
and session lifecycle.

Modules are imported directly (``from trip_pipeline.services.router import
ProviderRouter``) since the router depends on the core classifier.
"""
