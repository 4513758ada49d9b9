"""
Projects and tasks: project records, nested tasks, status workflow and "my tasks".
"""
