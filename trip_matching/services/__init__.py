# trip_matching/services/__init__.py
"""
Транспортные адаптеры движка.
"""
