# Core module
# Import components directly where needed to avoid circular imports
#
# Example:
#   from llama_supervisor.core.supervisor import ProcessSupervisor
