"""
channels — Outbound delivery backends.

Each client returns a ProviderResult for any HTTP answer and raises only
for local validation or transport failures. Retry logic lives in the
delivery worker.
"""
