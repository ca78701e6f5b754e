"""
SendFlow Controllers Package
Blueprints are registered by create_app
"""
