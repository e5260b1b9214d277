"""
channels — Per-channel senders and their provider gateways.

Each channel module exposes:
    • a sender:   await Channel.send(alert_id, recipient, message) → ChannelResult
    • gateways:   a simulation gateway and one real provider
    • build_*_gateway(settings) to pick the provider from configuration

Senders never raise for bad recipients or gateway failures; they return
a ChannelResult. Persisting the outcome on the alert is the dispatcher's
job.
"""
