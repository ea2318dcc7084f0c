# Utility helpers shared by core and services
