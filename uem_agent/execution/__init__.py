"""
Module Execution - Exécution locale de scripts

- Lancement de processus avec timeout et arrêt de l'arbre complet
- Détection des interpréteurs disponibles par plateforme
- Service d'exécution de scripts (powershell, bash, cmd, python, wmi)
"""
