"""
channels — Per-channel delivery providers.

Each channel module exposes:
    <Real>Provider / Simulated<...>Provider   → send(to, ...) → SendReceipt
    build_<channel>_provider(settings)        → provider | None

Providers are stateless per message. Concurrency, timeouts and failure
recording live in the dispatcher.
"""
