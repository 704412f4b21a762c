"""Data files shipped with Therapeia: the operation catalogue and the report templates"""
