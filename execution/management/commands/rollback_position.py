from django.core.management.base import BaseCommand, CommandError

from core.exceptions import RollbackError
from execution.models import Position
from execution.positions import rollback_position
from jobs.poller import enqueue_once


class Command(BaseCommand):
    help = "Roll back a position: cancel its open orders and flatten the exchange position"

    def add_arguments(self, parser):
        parser.add_argument("position_id", type=int)
        parser.add_argument("--now", action="store_true", help="Run inline instead of queueing a rollback job")

    def handle(self, *args, **options):
        position_id = options["position_id"]
        if not Position.objects.filter(pk=position_id).exists():
            raise CommandError(f"Position #{position_id} does not exist")

        if not options["now"]:
            entry = enqueue_once("rollback-position", [position_id])
            if entry is None:
                self.stdout.write(f"Rollback of position #{position_id} is already queued.")
            else:
                self.stdout.write(self.style.SUCCESS(f"Queued rollback job #{entry.pk} for position #{position_id}."))
            return

        try:
            position = rollback_position(position_id)
        except RollbackError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(
            self.style.SUCCESS(f"Position #{position.pk} is {position.status} (realized pnl {position.realized_pnl}).")
        )
