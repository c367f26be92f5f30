"""
Well-known peer addresses shared by the test modules.
"""

CF_EDGE_IP = "173.245.50.1"   # inside 173.245.48.0/20
OUTSIDE_IP = "8.8.8.8"
