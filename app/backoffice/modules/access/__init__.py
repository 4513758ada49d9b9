"""
Access control module (admin-only).

Scope:
- Users CRUD with role assignment
- Roles CRUD, permission matrix, bulk user assignment
- Permissions CRUD, grouped by the module their name maps to

Hard constraints:
- The last admin-role user can never be deleted or demoted
- System roles and core access permissions cannot be deleted
"""
