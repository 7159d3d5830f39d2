"""
Job Queue — RabbitMQ consumption with retry-by-republish.

- ConnectionManager owns the robust connection, channel and topology
- QueueConsumer receives deliveries, routes them, and acks / retries / rejects
"""
