"""Pipeline Control Plane.

Uniform control over Tekton, GitHub Actions, GitLab CI, Jenkins and Azure
Pipelines runs, plus ArgoCD convergence.
"""

__version__ = "0.1.0"
