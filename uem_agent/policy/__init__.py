"""
Module Policy - Politiques multi-étapes

- Modèles échangés avec le plan de contrôle
- Moteur d'exécution ordonnée des étapes (stop, retry, progression)
- Récupération des commandes en attente et remontée des résultats
"""
