"""Per-call audio bridging between Twilio media streams and a voice agent.

Flow for one call:
Twilio -> media stream websocket -> SessionBridge -> agent websocket, and back.
"""
