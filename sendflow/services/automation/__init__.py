"""Workflow automation: definitions, enrollment, execution"""
