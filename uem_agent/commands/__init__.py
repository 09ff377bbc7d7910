"""
Module Commands - Commandes poussées par le plan de contrôle

- Canal persistant (flux HTTP) et file locale des commandes reçues
- Traitement des commandes (run-shell, run-script) et envoi des réponses
- Distribution concurrente des commandes et déclenchement de la découverte
"""
