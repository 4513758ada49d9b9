"""
CMS navigation menus: menus per site location with nested, permission-aware items.
"""
