"""
Integration verification: on-demand health checks for the database, object storage,
cache, queue configuration and outbound mail configuration.
"""
