# trip_matching/core/__init__.py
"""
Доменный слой: заявки, поиск исполнителей, торги, жизненный цикл заказа.
"""
