"""AWS Resource Access Tool: SSM shells, tunnels, ECS and CloudWatch helpers."""

__version__ = "1.0.0"
