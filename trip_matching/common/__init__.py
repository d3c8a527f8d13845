# trip_matching/common/__init__.py
"""
Общие утилиты: константы, ошибки, логирование, повторы.
"""
