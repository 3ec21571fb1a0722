"""
Bike-sharing demand pipeline

Packages:
- bikeshare: staged pipeline (collect, wrangle, analyze, visualize, model),
  frozen feature transformer, model registry and prediction serving
"""
