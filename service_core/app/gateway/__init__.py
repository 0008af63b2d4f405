"""
Outbound API gateway package.
"""
