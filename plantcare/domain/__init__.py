"""Domain objects for devices, irrigation and health."""
