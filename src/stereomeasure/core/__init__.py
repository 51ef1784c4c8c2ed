"""
Numerical core of the stereo measurement engine.

Everything here is pure: lens distortion, disparity triangulation and
ground-sample-distance area, on scalars or numpy arrays.
"""
