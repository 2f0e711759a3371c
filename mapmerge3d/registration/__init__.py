"""Per-map features and pairwise registration"""
