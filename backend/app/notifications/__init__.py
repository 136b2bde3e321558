"""
notifications — Fleet alert ingestion and WhatsApp delivery.

Sub-modules:
    channels/       — Provider clients (Infobip WhatsApp)
    templates       — Alert type → template code + language
    placeholders    — Payload field extraction, placeholder list, plain text
    idempotency     — Atomic duplicate suppression on the alerts table
    worker          — One delivery attempt with persistence
    queue           — In-process asyncio queue with delayed requeue
    service         — Ingestion, diagnostics and recovery orchestration
    runtime         — Builds the pipeline from settings (app and CLI)
    models          — ORM entities and shared data structures
"""
