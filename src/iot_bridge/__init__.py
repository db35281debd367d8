"""
IoT Bridge - MQTT to PostgreSQL ingestion service.

Subscribes to a local Mosquitto broker or AWS IoT Core, persists every
received message into PostgreSQL and exposes health and Prometheus
counters over HTTP.
"""

__version__ = "1.0.0"
__author__ = "IoT Platform Team"
