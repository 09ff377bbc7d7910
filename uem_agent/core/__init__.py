"""
Module Core - Composants principaux de l'agent

Ce module contient les fonctionnalités de base de l'agent :
- Configuration
- Logging
- Identité auprès du plan de contrôle
- Communication HTTP avec le serveur
- Stockage local durable
- Planification des tâches
"""
