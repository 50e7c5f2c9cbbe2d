"""Topic broker with retained values, REST and MQTT-over-WebSocket access, persistent state and backlight control."""

__version__ = "0.1.0"