"""Fleet membership for media relays and SIP routers.

The registry holds durable node attributes, the membership table holds the live
gossip view, and the selector joins both by (kind, id) at read time.
"""
