"""
Package API locale de statut

Ce package fournit une API Flask en écoute locale permettant :
- De consulter l'état de l'agent et de ses composants
- De lister les dernières exécutions de politiques
- De déclencher manuellement une découverte
"""

from .app import LocalStatusApp

__all__ = ['LocalStatusApp']
