"""
Live chat: visitor sessions from the public site, an agent queue, and
Pusher-compatible channel authorization for realtime clients.
"""
