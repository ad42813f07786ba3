from django.core.management.base import BaseCommand, CommandError

from core.exceptions import RepricingError
from execution.models import Position
from execution.repricing import reprice_position


class Command(BaseCommand):
    help = "Recompute the weighted average entry of a position and amend its PROFIT order"

    def add_arguments(self, parser):
        parser.add_argument("position_ids", nargs="*", type=int)
        parser.add_argument("--all", action="store_true", help="Reprice every synced position")

    def handle(self, *args, **options):
        ids = list(options["position_ids"])
        if options["all"]:
            ids = list(Position.objects.filter(status=Position.Status.SYNCED).values_list("id", flat=True))
        if not ids:
            raise CommandError("Pass position ids or --all")

        failures = 0
        for position_id in ids:
            try:
                outcome = reprice_position(position_id)
            except Position.DoesNotExist:
                self.stderr.write(f"Position #{position_id} does not exist")
                failures += 1
                continue
            except RepricingError as exc:
                self.stderr.write(str(exc))
                failures += 1
                continue
            self.stdout.write(f"Position #{position_id}: {outcome}")
        if failures:
            raise CommandError(f"{failures} position(s) could not be repriced")
