"""SendFlow Services"""
