"""CRM scheduling and approval API"""
