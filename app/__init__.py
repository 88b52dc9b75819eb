"""
TN API Server application package
"""
