"""
Device-side components that run next to the gate actuator.
"""
