"""
FriLAN API - LAN party event management

Responsibilities:
- User accounts and access tokens
- Events and registrations (players, organizers)
- Tournaments and their lifecycle (hidden, ready, started, finished)
- Teams and team membership
- Ranking and points distribution
- Real-time entity notifications (server-sent events)
"""
